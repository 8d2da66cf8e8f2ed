#!/usr/bin/env python3
"""
ComfyUI Desktop Launcher

Installs, validates and runs a bundled ComfyUI server in an isolated Python
environment managed by uv.

Usage:
    python run.py                                  # Install if needed, then start the server
    python run.py --base-path ~/ComfyUI --device nvidia
    python run.py --check-only                     # Validate the installation and print a report
    python run.py --no-start                       # Install / repair only
    python run.py --listen 0.0.0.0 --port 8188     # Network accessible

Environment Variables (prefix COMFY_DESKTOP_):
    - RESOURCES_PATH: Bundled assets (ComfyUI/, requirements/, uv/)
    - STATE_FILE: Installation record, defaults to ~/.comfy-desktop/config.json
    - LOG_DIR: Log directory, the server log is written to comfyui.log
    - DEV_MODE, HOST_OVERRIDE, PORT_OVERRIDE, USE_EXTERNAL_SERVER: development overrides
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from desktop_launcher.config import Settings
from desktop_launcher.core.events import LoggingEventTracker
from desktop_launcher.core.launch_args import build_server_args
from desktop_launcher.exceptions import ServerKillError, ServerStartError
from desktop_launcher.install.console_ui import Color, ConsoleInstallerUI, ConsoleTroubleshootingUI
from desktop_launcher.install.installation import Installation
from desktop_launcher.install.installation_manager import InstallationManager
from desktop_launcher.logging_config import configure_logging
from desktop_launcher.models.install import InstallOptions, ProgressStatus, TorchDevice
from desktop_launcher.services.app_settings import AppSettings
from desktop_launcher.services.install_state import InstallStateStore
from desktop_launcher.services.server_supervisor import ServerSupervisor

logger = logging.getLogger('desktop_launcher.run')


# ============================================================================
# SignalHandler
# ============================================================================

class SignalHandler:
    """Handles graceful shutdown on SIGINT/SIGTERM."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def setup(self):
        """Set up signal handlers on the running event loop."""
        self._loop = asyncio.get_running_loop()
        for sig in self.SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self.shutdown_event.set)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(sig, self._handle_signal)

    def remove(self):
        """Restore default signal handling."""
        if self._loop is None:
            return
        for sig in self.SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.default_int_handler if sig == signal.SIGINT else signal.SIG_DFL)
        self._loop = None

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        self._loop.call_soon_threadsafe(self.shutdown_event.set)

    async def wait_for_shutdown(self):
        """Wait for shutdown signal."""
        await self.shutdown_event.wait()


# ============================================================================
# Argument Parsing
# ============================================================================

def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description='ComfyUI Desktop Launcher',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py                                # Install if needed, then start
  python run.py --base-path ~/ComfyUI          # Install to a specific folder without prompting
  python run.py --check-only                   # Validate without starting
        """
    )

    # Install options
    parser.add_argument(
        '--base-path',
        help='Install location (skips the interactive prompt on first install)'
    )
    parser.add_argument(
        '--device',
        choices=[d.value for d in TorchDevice],
        default=TorchDevice.CPU.value,
        help='Accelerator to install PyTorch for (default: cpu)'
    )
    parser.add_argument(
        '--python-mirror',
        default='',
        help='Mirror for managed Python downloads'
    )
    parser.add_argument(
        '--pypi-mirror',
        default='',
        help='Package index URL for requirements'
    )
    parser.add_argument(
        '--torch-mirror',
        default='',
        help='Package index URL for PyTorch'
    )

    # Server options
    parser.add_argument(
        '--listen',
        help='Address for the server to listen on (default: 127.0.0.1)'
    )
    parser.add_argument(
        '--port',
        type=int,
        help='Port for the server (default: 8000)'
    )

    # Modes
    parser.add_argument(
        '--check-only',
        action='store_true',
        help='Validate the installation, print a report and exit'
    )
    parser.add_argument(
        '--no-start',
        action='store_true',
        help='Install or repair, but do not start the server'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable debug logging'
    )

    return parser


def install_options_from_args(args: argparse.Namespace) -> Optional[InstallOptions]:
    if not args.base_path:
        return None
    return InstallOptions(
        install_path=args.base_path,
        device=TorchDevice(args.device),
        python_mirror=args.python_mirror,
        pypi_mirror=args.pypi_mirror,
        torch_mirror=args.torch_mirror,
    )


# ============================================================================
# Commands
# ============================================================================

async def check_installation(store: InstallStateStore, settings: Settings) -> int:
    """Validate and print the report. Returns the process exit code."""
    installation = Installation.from_store(store, settings)
    if installation is None:
        print(f"{Color.RED}Not installed.{Color.RESET}")
        return 1

    await installation.validate()
    ui = ConsoleTroubleshootingUI()
    ui.print_report(installation.validation)
    return 0 if installation.is_valid else 1


async def run_server(
    installation: Installation,
    settings: Settings,
    ui: ConsoleInstallerUI,
    events: LoggingEventTracker,
) -> int:
    app_settings = AppSettings.load(installation.base_path)
    server_args = build_server_args(app_settings, settings)
    supervisor = ServerSupervisor(
        installation.base_path,
        server_args,
        installation.runtime,
        settings,
        events=events,
        on_output=ui.send_log,
    )

    signal_handler = SignalHandler()
    signal_handler.setup()

    try:
        ui.send_progress(ProgressStatus.STARTING_SERVER)
        await supervisor.start(app_settings)
        ui.send_progress(ProgressStatus.READY)
        print(f"\n{Color.GREEN}{Color.BOLD}ComfyUI is running at {supervisor.base_url}{Color.RESET}\n")

        await signal_handler.wait_for_shutdown()
    except ServerStartError as e:
        ui.send_progress(ProgressStatus.ERROR)
        logger.error('Unable to start server: %s', e)
        if supervisor.timed_out_whilst_starting:
            logger.error('The server may still be starting. See %s', settings.log_dir)
        return 1
    finally:
        signal_handler.remove()
        try:
            await supervisor.kill()
        except ServerKillError as e:
            logger.error('Failed to stop server: %s', e)
    return 0


# ============================================================================
# Main Entry Point
# ============================================================================

async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = create_argument_parser().parse_args(argv)

    overrides = {}
    if args.listen:
        overrides['listen'] = args.listen
    if args.port:
        overrides['port'] = args.port
    settings = Settings(**overrides)
    configure_logging(settings, verbose=args.verbose)

    store = InstallStateStore(settings.state_file)
    if args.check_only:
        return await check_installation(store, settings)

    events = LoggingEventTracker()
    ui = ConsoleInstallerUI(install_options_from_args(args))
    manager = InstallationManager(store, settings, ui, ConsoleTroubleshootingUI(), events=events)
    installation = await manager.ensure_installed()

    if args.no_start:
        return 0
    if settings.external_server:
        logger.info('Using external server at %s:%s', settings.effective_listen, settings.effective_port)
        return 0

    return await run_server(installation, settings, ui, events)


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        # Graceful exit on Ctrl+C
        sys.exit(0)


if __name__ == '__main__':
    cli()
