"""Top-level control of the installation lifecycle.

``ensure_installed`` does not return until the installation validates cleanly.
When validation finds errors it hands control to the troubleshooting UI and
waits for the user to ask for a recheck, as many times as it takes.
"""

from __future__ import annotations

import logging
import platform as platform_module
import sys
from pathlib import Path
from typing import Callable, Optional

from desktop_launcher.config import Settings
from desktop_launcher.core.events import EventTracker, LoggingEventTracker, track_event
from desktop_launcher.exceptions import LauncherError
from desktop_launcher.install.install_wizard import MIGRATE_CUSTOM_NODES, InstallWizard
from desktop_launcher.install.installation import Installation, RuntimeFactory
from desktop_launcher.install.interfaces import InstallerUI, TroubleshootingUI
from desktop_launcher.models.command import ProcessCallbacks
from desktop_launcher.models.install import InstallState, ProgressStatus
from desktop_launcher.services.install_state import InstallStateStore
from desktop_launcher.services.manager_cli import ManagerCli
from desktop_launcher.services.runtime_environment import RuntimeEnvironment
from desktop_launcher.utils.shell import can_execute_shell_command

logger = logging.getLogger(__name__)

ManagerCliFactory = Callable[[RuntimeEnvironment], ManagerCli]


async def detect_gpu(platform: str = sys.platform, machine: Optional[str] = None) -> Optional[str]:
    """Best guess at the accelerator, or None if nothing was recognised."""
    machine = machine or platform_module.machine()
    if platform == 'darwin' and machine == 'arm64':
        return 'mps'
    if await can_execute_shell_command('nvidia-smi'):
        return 'nvidia'
    return None


class InstallationManager:
    """Drives fresh installs, resumption, validation and repair."""

    def __init__(
        self,
        store: InstallStateStore,
        config: Settings,
        ui: InstallerUI,
        troubleshooting: TroubleshootingUI,
        *,
        events: Optional[EventTracker] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
        manager_cli_factory: Optional[ManagerCliFactory] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.ui = ui
        self.troubleshooting = troubleshooting
        self.events = events or LoggingEventTracker()
        self._runtime_factory = runtime_factory
        self._manager_cli_factory: ManagerCliFactory = manager_cli_factory or ManagerCli

        # Set the first time an error is found during validation
        self._on_maintenance_page = False

    async def ensure_installed(self) -> Installation:
        """Return a valid installation, installing or repairing as needed."""
        installation = Installation.from_store(
            self.store, self.config, events=self.events, runtime_factory=self._runtime_factory
        )
        logger.info('Install state: %s', installation.state.value if installation else 'not installed')

        if installation is None:
            return await self.fresh_install()

        if installation.state == InstallState.STARTED:
            return await self.resume_installation()

        return await self.validate_installation(installation)

    async def resume_installation(self) -> Installation:
        """Finish an installation that was interrupted.

        Starts over from the beginning; every install step tolerates
        existing output.
        """
        logger.info('Resuming installation.')
        return await self.fresh_install()

    # ------------------------------------------------------------------
    # Fresh install
    # ------------------------------------------------------------------

    async def fresh_install(self) -> Installation:
        logger.info('Starting installation.')
        self.store.set('installState', InstallState.STARTED.value)

        gpu = await detect_gpu()
        if gpu:
            self.store.set('detectedGpu', gpu)

        logger.debug('Checking if git is installed.')
        if not await can_execute_shell_command('git --version'):
            logger.info('git not detected in path')
            await self.ui.warn_git_missing()

        options = await self.ui.collect_install_options()
        self.events.track('desktop:install_options_received', {
            'device': options.device.value,
            'auto_update': options.auto_update,
            'allow_metrics': options.allow_metrics,
            'migration_item_ids': list(options.migration_item_ids),
            'python_mirror': options.python_mirror,
            'pypi_mirror': options.pypi_mirror,
            'torch_mirror': options.torch_mirror,
        })

        self.store.update(
            basePath=options.install_path,
            selectedDevice=options.device.value,
            pythonMirror=options.python_mirror,
            pypiMirror=options.pypi_mirror,
            torchMirror=options.torch_mirror,
        )

        # Creates folders and initializes settings
        wizard = InstallWizard(options, self.config, self.events)
        await wizard.install()

        if wizard.should_migrate(MIGRATE_CUSTOM_NODES):
            self.store.set('migrateCustomNodesFrom', str(wizard.migration_source))

        installation = Installation(
            InstallState.STARTED,
            wizard.base_path,
            self.store,
            self.config,
            events=self.events,
            runtime_factory=self._runtime_factory,
        )
        runtime = installation.runtime
        callbacks = ProcessCallbacks(on_stdout=self._send_log, on_stderr=self._send_error_log)

        self.ui.send_progress(ProgressStatus.PYTHON_SETUP)
        await runtime.create(callbacks)

        migration_error = await self.migrate_custom_nodes(runtime, callbacks)
        if migration_error:
            self.ui.notify('Failed to migrate custom nodes', migration_error)

        installation.set_state(InstallState.INSTALLED)
        return installation

    async def migrate_custom_nodes(
        self, runtime: RuntimeEnvironment, callbacks: Optional[ProcessCallbacks] = None
    ) -> Optional[str]:
        """Restore custom nodes from the recorded migration source.

        Returns None on success (or when there is nothing to migrate), otherwise
        an error message for the user.
        """
        from_path = self.store.get('migrateCustomNodesFrom')
        if not from_path:
            return None

        logger.info('Migrating custom nodes from: %s', from_path)
        try:
            await self._manager_cli_factory(runtime).restore_custom_nodes(Path(from_path), callbacks)
        except (LauncherError, OSError) as e:
            logger.error('Error migrating custom nodes: %s', e)
            return str(e) or 'Error migrating custom nodes.'
        finally:
            # Always remove the flag so the user doesn't get stuck here
            self.store.delete('migrateCustomNodesFrom')
        return None

    # ------------------------------------------------------------------
    # Validation and repair
    # ------------------------------------------------------------------

    async def validate_installation(self, installation: Installation) -> Installation:
        self._on_maintenance_page = False
        installation.add_listener(self.troubleshooting.publish)
        try:
            state = await installation.validate()
            await self._after_validation(installation)

            # Convert from old format
            if state == InstallState.UPGRADED:
                installation.upgrade_config()

            if installation.needs_requirements_update:
                await self.update_packages(installation)

            if installation.has_issues:
                while not await self.resolve_issues(installation):
                    logger.debug('Re-validating installation.')
        finally:
            installation.remove_listener(self.troubleshooting.publish)

        return installation

    async def _after_validation(self, installation: Installation) -> None:
        """Open the maintenance UI the first time any error is found."""
        if self._on_maintenance_page or not installation.validation.has_errors:
            return

        self._on_maintenance_page = True
        self.events.track('validation:error_found', {'error': installation.validation.errors[0]})
        logger.info('Validation error - loading maintenance page.')
        await self.troubleshooting.show_maintenance()

    async def resolve_issues(self, installation: Installation) -> bool:
        """Wait for the user to request a recheck, then report whether the installation is valid."""
        logger.debug('Resolving issues - awaiting user response: %r', installation.validation)
        await self.troubleshooting.wait_for_recheck()

        # Issues may have been fixed while the maintenance UI was open
        if not installation.is_valid:
            await installation.validate()
            await self._after_validation(installation)

        logger.debug('Resolution complete: %r', installation.validation)
        return installation.is_valid

    async def update_packages(self, installation: Installation) -> None:
        await track_event(
            self.events,
            'installation_manager:manager_packages_update',
            self._update_packages,
            installation,
        )

    async def _update_packages(self, installation: Installation) -> None:
        callbacks = ProcessCallbacks.single(self._send_log)
        try:
            await installation.runtime.update_requirements(callbacks)
            await installation.validate()
            await self._after_validation(installation)
        except (LauncherError, OSError) as e:
            logger.error('Error auto-updating packages: %s', e)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _send_log(self, data: str) -> None:
        logger.info(data.rstrip('\r\n'))
        self.ui.send_log(data)

    def _send_error_log(self, data: str) -> None:
        logger.error(data.rstrip('\r\n'))
        self.ui.send_log(data)
