"""An installation on disk and its validation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from desktop_launcher.config import Settings
from desktop_launcher.core.events import EventTracker, LoggingEventTracker
from desktop_launcher.exceptions import LauncherError
from desktop_launcher.models.install import InstallState, TorchDevice
from desktop_launcher.models.validation import RequirementsStatus, ValidationReport, ValidationStatus
from desktop_launcher.services.install_state import InstallStateStore
from desktop_launcher.services.runtime_environment import RuntimeEnvironment
from desktop_launcher.utils.fs import path_accessible
from desktop_launcher.utils.shell import can_execute_shell_command

logger = logging.getLogger(__name__)

ValidationListener = Callable[[ValidationReport], None]
RuntimeFactory = Callable[['Installation'], RuntimeEnvironment]


class Installation:
    """Base path, lifecycle state and the runtime environment of one install."""

    def __init__(
        self,
        state: InstallState,
        base_path: Path,
        store: InstallStateStore,
        config: Settings,
        *,
        events: Optional[EventTracker] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
    ) -> None:
        self.state = InstallState(state)
        self.base_path = Path(base_path)
        self.store = store
        self.config = config
        self.events = events or LoggingEventTracker()

        self.validation = ValidationReport()
        self.needs_requirements_update = False

        self._runtime_factory = runtime_factory or _default_runtime
        self._runtime: Optional[RuntimeEnvironment] = None
        self._listeners: list[ValidationListener] = []

    @classmethod
    def from_store(
        cls,
        store: InstallStateStore,
        config: Settings,
        *,
        events: Optional[EventTracker] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
    ) -> Optional["Installation"]:
        """Load the recorded installation, or None if nothing was ever installed."""
        state = store.get('installState')
        base_path = store.get('basePath')

        if state:
            try:
                install_state = InstallState(state)
            except ValueError:
                logger.warning('Unknown install state %r, treating as started', state)
                install_state = InstallState.STARTED
            return cls(install_state, Path(base_path or ''), store, config,
                       events=events, runtime_factory=runtime_factory)
        # Records written before installState existed only have a base path
        if base_path:
            return cls(InstallState.UPGRADED, Path(base_path), store, config,
                       events=events, runtime_factory=runtime_factory)
        return None

    @property
    def runtime(self) -> RuntimeEnvironment:
        if self._runtime is None:
            self._runtime = self._runtime_factory(self)
        return self._runtime

    @property
    def is_valid(self) -> bool:
        return self.validation.is_valid

    @property
    def has_issues(self) -> bool:
        return not self.validation.is_valid

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ValidationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ValidationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self) -> None:
        snapshot = self.validation.copy()
        for listener in list(self._listeners):
            listener(snapshot)

    def _update(self, check: str, status: ValidationStatus) -> None:
        self.validation.set(check, status)
        self._publish()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(self) -> InstallState:
        """Check the installation, publishing each result as it is found.

        Returns the recorded state; problems are reported in ``validation``.
        """
        logger.info('Validating installation. Recorded state: [%s]', self.state.value)
        self.validation = ValidationReport()
        self.needs_requirements_update = False

        base_ok = str(self.base_path) not in ('', '.') and self.base_path.is_dir()
        self._update('basePath', ValidationStatus.OK if base_ok else ValidationStatus.ERROR)

        try:
            runtime = self.runtime
        except LauncherError as e:
            logger.error('Unable to set up the runtime environment: %s', e)
            for check in ('venvDirectory', 'pythonInterpreter', 'uv', 'pythonPackages'):
                self._update(check, ValidationStatus.ERROR)
            runtime = None

        if runtime is not None:
            venv_ok = base_ok and runtime.venv_path.is_dir()
            self._update('venvDirectory', ValidationStatus.OK if venv_ok else ValidationStatus.ERROR)

            interpreter_ok = venv_ok and path_accessible(runtime.python_interpreter_path)
            self._update('pythonInterpreter', ValidationStatus.OK if interpreter_ok else ValidationStatus.ERROR)

            uv_ok = path_accessible(runtime.uv_path)
            self._update('uv', ValidationStatus.OK if uv_ok else ValidationStatus.ERROR)

            self._update('pythonPackages', await self._check_packages(runtime, interpreter_ok and uv_ok))

        git_ok = await can_execute_shell_command('git --version')
        self._update('git', ValidationStatus.OK if git_ok else ValidationStatus.WARNING)

        logger.info('Validation result: %r', self.validation)
        return self.state

    async def _check_packages(self, runtime: RuntimeEnvironment, prerequisites_ok: bool) -> ValidationStatus:
        if not prerequisites_ok:
            return ValidationStatus.ERROR
        try:
            status = await runtime.has_requirements()
        except (LauncherError, OSError) as e:
            logger.error('Error checking python packages: %s', e)
            return ValidationStatus.ERROR

        if status == RequirementsStatus.PACKAGE_UPGRADE:
            self.needs_requirements_update = True
            return ValidationStatus.WARNING
        if status == RequirementsStatus.OK:
            return ValidationStatus.OK
        return ValidationStatus.ERROR

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def set_state(self, state: InstallState) -> None:
        self.state = InstallState(state)
        self.store.set('installState', self.state.value)

    def upgrade_config(self) -> None:
        """Collapse a historical record into the current format."""
        self.store.update(basePath=str(self.base_path), installState=InstallState.INSTALLED.value)
        self.state = InstallState.INSTALLED

    async def uninstall(self) -> None:
        """Remove the runtime environment, the model paths file and the persisted record."""
        logger.info('Uninstalling %s', self.base_path)
        if not await self.runtime.remove_venv_directory():
            raise LauncherError(f'Failed to remove the virtual environment at {self.runtime.venv_path}')
        self.config.extra_model_paths_config.unlink(missing_ok=True)
        self.store.clear()


def _default_runtime(installation: Installation) -> RuntimeEnvironment:
    store, config = installation.store, installation.config
    return RuntimeEnvironment(
        installation.base_path,
        resources_path=config.resources_path,
        selected_device=TorchDevice(store.get('selectedDevice') or TorchDevice.CPU.value),
        python_version=config.python_version,
        python_mirror=store.get('pythonMirror'),
        pypi_mirror=store.get('pypiMirror'),
        torch_mirror=store.get('torchMirror'),
        uv_path=config.uv_path,
        events=installation.events,
    )
