"""Isolated Python runtime for the bundled server, managed with ``uv``.

Long-running installer commands go through an interactive
:class:`~desktop_launcher.core.command_channel.CommandChannel` so their output
streams to the UI terminal as it is produced. Short commands (``ensurepip``,
dry runs, the server itself) are run as direct subprocesses.

At most one channel is alive per environment. Every operation that uses it
runs inside :meth:`RuntimeEnvironment._channel_session`, which terminates the
shell before the operation returns, including on error.
"""

from __future__ import annotations

import logging
import shlex
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Mapping, Optional, Sequence

from desktop_launcher.core.command_channel import CommandChannel, ShellCommandChannel
from desktop_launcher.core.events import EventTracker, LoggingEventTracker, error_properties, track_event
from desktop_launcher.core.pip_args import (
    TORCH_PACKAGES,
    PipInstallConfig,
    default_torch_mirror,
    fix_device_mirror_mismatch,
    get_pip_install_args,
)
from desktop_launcher.core.requirements_check import classify_requirements
from desktop_launcher.exceptions import CommandExitError, LauncherError, UnsupportedPlatformError
from desktop_launcher.models.command import CommandResult, OutputSink, ProcessCallbacks
from desktop_launcher.models.install import TorchDevice
from desktop_launcher.models.validation import RequirementsStatus
from desktop_launcher.utils.fs import path_accessible, remove_directory
from desktop_launcher.utils.process import StreamingProcess, run_to_completion, spawn
from desktop_launcher.utils.shell import activate_environment_command

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[Path, Mapping[str, str]], CommandChannel]


def bundled_uv_path(resources_path: Path, platform: str = sys.platform) -> Path:
    uv_folder = resources_path / 'uv'
    if platform == 'win32':
        return uv_folder / 'win' / 'uv.exe'
    if platform == 'linux':
        return uv_folder / 'linux' / 'uv'
    if platform == 'darwin':
        return uv_folder / 'macos' / 'uv'
    raise UnsupportedPlatformError(f"Unsupported platform: {platform}")


def compiled_requirements_path(
    resources_path: Path, device: TorchDevice, platform: str = sys.platform
) -> Optional[Path]:
    """Platform lockfile, or None where no lockfile is shipped."""
    if platform == 'darwin':
        name = 'macos'
    elif platform == 'win32':
        name = 'windows_cpu' if device == TorchDevice.CPU else 'windows_nvidia'
    else:
        return None
    return resources_path / 'requirements' / f'{name}.compiled'


class RuntimeEnvironment:
    """A uv-managed virtual environment under ``<base_path>/.venv``."""

    def __init__(
        self,
        base_path: Path,
        *,
        resources_path: Path,
        selected_device: TorchDevice = TorchDevice.CPU,
        python_version: str = '3.12',
        python_mirror: Optional[str] = None,
        pypi_mirror: Optional[str] = None,
        torch_mirror: Optional[str] = None,
        uv_path: Optional[Path] = None,
        events: Optional[EventTracker] = None,
        channel_factory: Optional[ChannelFactory] = None,
        platform: str = sys.platform,
    ) -> None:
        self.base_path = Path(base_path)
        self.resources_path = Path(resources_path)
        self.selected_device = TorchDevice(selected_device)
        self.python_version = python_version
        self.platform = platform
        self.events = events or LoggingEventTracker()

        # Empty strings are not valid mirror values; treat them as unset
        self.python_mirror = python_mirror or None
        self.pypi_mirror = pypi_mirror or None
        self.torch_mirror = fix_device_mirror_mismatch(self.selected_device, torch_mirror)

        # uv defaults to .venv
        self.venv_path = self.base_path / '.venv'
        comfyui_path = self.resources_path / 'ComfyUI'
        self.comfyui_requirements_path = comfyui_path / 'requirements.txt'
        self.manager_requirements_path = comfyui_path / 'custom_nodes' / 'ComfyUI-Manager' / 'requirements.txt'
        self.requirements_compiled_path = compiled_requirements_path(
            self.resources_path, self.selected_device, platform
        )

        if platform == 'win32':
            self.python_interpreter_path = self.venv_path / 'Scripts' / 'python.exe'
        else:
            self.python_interpreter_path = self.venv_path / 'bin' / 'python'

        self.uv_path = Path(uv_path) if uv_path else bundled_uv_path(self.resources_path, platform)
        logger.info("Using uv at %s", self.uv_path)

        self._channel_factory: ChannelFactory = channel_factory or (
            lambda cwd, env: ShellCommandChannel(cwd, env, platform=platform)
        )
        self._channel: Optional[CommandChannel] = None

    # ------------------------------------------------------------------
    # Command channel ownership
    # ------------------------------------------------------------------

    @property
    def channel_env(self) -> dict[str, str]:
        env = {'VIRTUAL_ENV': str(self.venv_path)}
        if self.python_mirror:
            env['UV_PYTHON_INSTALL_MIRROR'] = self.python_mirror
        return env

    @property
    def channel(self) -> CommandChannel:
        """The live channel, created on first use."""
        if self._channel is None:
            self._channel = self._channel_factory(self.base_path, self.channel_env)
        return self._channel

    @property
    def has_channel(self) -> bool:
        return self._channel is not None

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

    @asynccontextmanager
    async def _channel_session(self) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await self._close_channel()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def exists(self) -> bool:
        return path_accessible(self.venv_path)

    async def create(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        """Create the environment and install all requirements.

        No-op if the environment directory already exists. A partially
        created directory is left in place when a step fails.
        """
        async with self._channel_session():
            await self._create_environment(callbacks)

    async def _create_environment(self, callbacks: Optional[ProcessCallbacks]) -> None:
        self.events.track('install_flow:virtual_environment_create_start', {
            'python_version': self.python_version,
            'device': self.selected_device.value,
        })
        if self.selected_device == TorchDevice.UNSUPPORTED:
            logger.info('User elected to manually configure their environment. Skipping python configuration.')
            self.events.track('install_flow:virtual_environment_create_end', {'reason': 'unsupported_device'})
            return

        try:
            if await self.exists():
                self.events.track('install_flow:virtual_environment_create_end', {'reason': 'already_exists'})
                logger.info('Virtual environment already exists at %s', self.venv_path)
                return

            await self.create_venv_with_python(callbacks)
            await self.ensure_pip(callbacks)
            await self.install_requirements(callbacks)
            self.events.track('install_flow:virtual_environment_create_end', {'reason': 'success'})
            logger.info('Successfully created virtual environment at %s', self.venv_path)
        except Exception as error:
            self.events.track('install_flow:virtual_environment_create_error', error_properties(error))
            logger.error('Error creating virtual environment: %s', error)
            raise

    async def create_venv_with_python(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        await track_event(
            self.events,
            'install_flow:virtual_environment_create_python',
            self._create_venv_with_python,
            callbacks,
        )

    async def _create_venv_with_python(self, callbacks: Optional[ProcessCallbacks]) -> None:
        logger.info('Creating virtual environment at %s with python %s', self.venv_path, self.python_version)
        args = ['venv', '--python', self.python_version, '--python-preference', 'only-managed']
        result = await self._run_uv_command_async(args, callbacks)
        if result.exit_code != 0:
            raise CommandExitError('Failed to create virtual environment', result.exit_code, result.stdout)

    async def ensure_pip(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        await track_event(self.events, 'install_flow:virtual_environment_ensurepip', self._ensure_pip, callbacks)

    async def _ensure_pip(self, callbacks: Optional[ProcessCallbacks]) -> None:
        result = await self.run_python_command_async(['-m', 'ensurepip', '--upgrade'], callbacks)
        if result.exit_code != 0:
            raise CommandExitError('Failed to upgrade pip', result.exit_code, result.stdout + result.stderr)

    # ------------------------------------------------------------------
    # Dependency installation
    # ------------------------------------------------------------------

    async def install_requirements(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        await track_event(
            self.events,
            'install_flow:virtual_environment_install_requirements',
            self._install_requirements,
            callbacks,
        )

    async def _install_requirements(self, callbacks: Optional[ProcessCallbacks]) -> None:
        # pytorch nightly is required for MPS
        if self.platform == 'darwin' or self.requirements_compiled_path is None:
            return await self.manual_install(callbacks)

        install_args = get_pip_install_args(PipInstallConfig(
            requirements_file=str(self.requirements_compiled_path),
            index_strategy='unsafe-best-match',
            index_url=self.pypi_mirror,
        ))
        result = await self._run_uv_command_async(install_args, callbacks)
        if result.exit_code != 0:
            logger.error(
                'Failed to install %s: exit code %s. Falling back to installing requirements.txt',
                self.requirements_compiled_path.name,
                result.exit_code,
            )
            return await self.manual_install(callbacks)

    async def manual_install(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        await self.install_pytorch(callbacks)
        await self.install_comfyui_requirements(callbacks)
        await self.install_manager_requirements(callbacks)

    async def install_pytorch(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        torch_mirror = self.torch_mirror or default_torch_mirror(self.selected_device)
        config = PipInstallConfig(
            packages=list(TORCH_PACKAGES),
            index_url=torch_mirror,
            prerelease='nightly' in torch_mirror,
        )
        logger.info('Installing PyTorch with config: %s', config)
        result = await self._run_uv_command_async(get_pip_install_args(config), callbacks)
        if result.exit_code != 0:
            raise CommandExitError('Failed to install PyTorch', result.exit_code, result.stdout)

    async def install_comfyui_requirements(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        logger.info('Installing ComfyUI requirements from %s', self.comfyui_requirements_path)
        await self._install_requirements_file(self.comfyui_requirements_path, 'ComfyUI requirements.txt', callbacks)

    async def install_manager_requirements(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        logger.info('Installing ComfyUI-Manager requirements from %s', self.manager_requirements_path)
        await self._install_requirements_file(
            self.manager_requirements_path, 'ComfyUI-Manager requirements.txt', callbacks
        )

    async def _install_requirements_file(
        self, path: Path, description: str, callbacks: Optional[ProcessCallbacks]
    ) -> None:
        install_args = get_pip_install_args(PipInstallConfig(
            requirements_file=str(path),
            index_url=self.pypi_mirror,
        ))
        result = await self._run_uv_command_async(install_args, callbacks)
        if result.exit_code != 0:
            raise CommandExitError(f'Failed to install {description}', result.exit_code, result.stdout)

    async def update_requirements(self, callbacks: Optional[ProcessCallbacks] = None) -> None:
        """Install core and manager requirements into the existing environment."""
        async with self._channel_session():
            await self.install_comfyui_requirements(callbacks)
            await self.install_manager_requirements(callbacks)

    # ------------------------------------------------------------------
    # Drift detection
    # ------------------------------------------------------------------

    async def has_requirements(self) -> RequirementsStatus:
        """Check whether the environment satisfies core and manager requirements.

        Parses the text output of ``uv pip install --dry-run -r requirements.txt``.
        """
        core_output = await self._dry_run(self.comfyui_requirements_path)
        manager_output = await self._dry_run(self.manager_requirements_path)
        return classify_requirements(core_output, manager_output)

    async def _dry_run(self, requirements_path: Path) -> str:
        args = get_pip_install_args(PipInstallConfig(requirements_file=str(requirements_path), dry_run=True))
        logger.info('Running direct process command: %s', ' '.join(args))
        result = await self._run_command_async(self.uv_path, args, {'VIRTUAL_ENV': str(self.venv_path)})

        output = result.stdout + result.stderr
        if result.exit_code != 0:
            raise CommandExitError('Failed to get packages', result.exit_code, output)
        if not output:
            raise LauncherError('Failed to get packages: uv output was empty')
        return output

    # ------------------------------------------------------------------
    # Repair and maintenance
    # ------------------------------------------------------------------

    async def reinstall_requirements(self, on_output: Optional[OutputSink] = None) -> bool:
        """Reinstall packages; on failure recreate the environment and retry once."""
        callbacks = ProcessCallbacks(on_stdout=on_output)
        try:
            async with self._channel_session():
                await self.manual_install(callbacks)
        except (LauncherError, OSError) as error:
            logger.error('Failed to reinstall requirements: %s', error)

            if not await self.remove_venv_directory():
                return False
            if not await self.create_venv(on_output):
                return False
            if not await self.upgrade_pip(callbacks):
                return False

            async with self._channel_session():
                await self.manual_install(callbacks)
        return True

    async def create_venv(self, on_output: Optional[OutputSink] = None) -> bool:
        """Create the environment directory. Returns False on failure."""
        try:
            async with self._channel_session():
                await self.create_venv_with_python(ProcessCallbacks(on_stdout=on_output))
            return True
        except (LauncherError, OSError) as error:
            logger.error('Failed to create virtual environment: %s', error)
            return False

    async def upgrade_pip(self, callbacks: Optional[ProcessCallbacks] = None) -> bool:
        try:
            async with self._channel_session():
                await self.ensure_pip(callbacks)
            return True
        except (LauncherError, OSError) as error:
            logger.error('Failed to upgrade pip: %s', error)
            return False

    async def clear_uv_cache(self, on_output: Optional[OutputSink] = None) -> bool:
        async with self._channel_session():
            result = await self._run_uv_command_async(['cache', 'clean'], ProcessCallbacks(on_stdout=on_output))
        if result.exit_code != 0:
            logger.error('Failed to clear uv cache: exit code %s', result.exit_code)
        return result.exit_code == 0

    async def remove_venv_directory(self) -> bool:
        return await remove_directory(self.venv_path, '.venv directory')

    def activate_environment_command(self) -> str:
        return activate_environment_command(self.venv_path, self.platform)

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def _uv_command_line(self, args: Sequence[str]) -> str:
        if self.platform == 'win32':
            quoted = ' '.join(f'"{a}"' for a in args)
            return f'& "{self.uv_path}" {quoted}'
        return ' '.join(shlex.quote(str(a)) for a in [self.uv_path, *args])

    async def _run_uv_command_async(
        self, args: Sequence[str], callbacks: Optional[ProcessCallbacks] = None
    ) -> CommandResult:
        command = self._uv_command_line(args)
        logger.info('Running uv command: %s', command)
        on_output = callbacks.on_stdout if callbacks else None
        return await self.channel.run(command, on_output)

    async def run_python_command(
        self,
        args: Sequence[str],
        callbacks: Optional[ProcessCallbacks] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> StreamingProcess:
        """Start the environment's interpreter and return the live process."""
        return await spawn(
            self.python_interpreter_path,
            args,
            {**(env or {}), 'PYTHONIOENCODING': 'utf8'},
            callbacks,
            cwd or self.base_path,
        )

    async def run_python_command_async(
        self,
        args: Sequence[str],
        callbacks: Optional[ProcessCallbacks] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """Run the environment's interpreter to completion."""
        return await self._run_command_async(
            self.python_interpreter_path,
            args,
            {**(env or {}), 'PYTHONIOENCODING': 'utf8'},
            callbacks,
            cwd,
        )

    async def _run_command_async(
        self,
        program: Path,
        args: Sequence[str],
        env: Mapping[str, str],
        callbacks: Optional[ProcessCallbacks] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        return await run_to_completion(program, args, env, callbacks, cwd or self.base_path)
