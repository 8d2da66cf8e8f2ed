"""Tests for the install / resume / validate / repair state machine."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from desktop_launcher.exceptions import LauncherError, ManagerCliError
from desktop_launcher.install.install_wizard import MIGRATE_CUSTOM_NODES
from desktop_launcher.install.installation_manager import InstallationManager, detect_gpu
from desktop_launcher.models.install import InstallOptions, InstallState, ProgressStatus, TorchDevice
from desktop_launcher.models.validation import RequirementsStatus
from desktop_launcher.services.install_state import InstallStateStore

from conftest import FakeRuntime

MANAGER_SHELL_CHECK = "desktop_launcher.install.installation_manager.can_execute_shell_command"
INSTALLATION_SHELL_CHECK = "desktop_launcher.install.installation.can_execute_shell_command"
DETECT_GPU = "desktop_launcher.install.installation_manager.detect_gpu"


@pytest.fixture(autouse=True)
def shell_commands_succeed():
    with patch(MANAGER_SHELL_CHECK, AsyncMock(return_value=True)), \
            patch(INSTALLATION_SHELL_CHECK, AsyncMock(return_value=True)), \
            patch(DETECT_GPU, AsyncMock(return_value=None)):
        yield


@pytest.fixture
def store(settings) -> InstallStateStore:
    return InstallStateStore(settings.state_file)


@pytest.fixture
def base_path(tmp_path) -> Path:
    return tmp_path / "base"


@pytest.fixture
def runtime(base_path, settings) -> FakeRuntime:
    return FakeRuntime(base_path, settings.uv_path)


@pytest.fixture
def ui(base_path):
    ui = MagicMock()
    ui.collect_install_options = AsyncMock(return_value=InstallOptions(install_path=str(base_path)))
    ui.warn_git_missing = AsyncMock()
    return ui


@pytest.fixture
def troubleshooting():
    troubleshooting = MagicMock()
    troubleshooting.show_maintenance = AsyncMock()
    troubleshooting.wait_for_recheck = AsyncMock()
    return troubleshooting


@pytest.fixture
def make_manager(store, settings, ui, troubleshooting, events, runtime):
    def _make(**kwargs):
        options = dict(events=events, runtime_factory=lambda installation: runtime)
        options.update(kwargs)
        return InstallationManager(store, settings, ui, troubleshooting, **options)

    return _make


def _record_install(store, base_path, state="installed"):
    base_path.mkdir(parents=True, exist_ok=True)
    store.update(basePath=str(base_path), installState=state)


# ============================================================================
# TestDetectGpu
# ============================================================================

class TestDetectGpu:

    async def test_apple_silicon(self):
        assert await detect_gpu("darwin", "arm64") == "mps"

    async def test_nvidia_smi_available(self):
        with patch(MANAGER_SHELL_CHECK, AsyncMock(return_value=True)):
            assert await detect_gpu("linux", "x86_64") == "nvidia"

    async def test_nothing_found(self):
        with patch(MANAGER_SHELL_CHECK, AsyncMock(return_value=False)):
            assert await detect_gpu("win32", "AMD64") is None


# ============================================================================
# TestFreshInstall
# ============================================================================

class TestFreshInstall:

    async def test_install_records_options_and_creates_environment(
        self, make_manager, store, ui, runtime, events, base_path
    ):
        ui.collect_install_options.return_value = InstallOptions(
            install_path=str(base_path), device=TorchDevice.NVIDIA, pypi_mirror="https://pypi.example"
        )
        with patch(DETECT_GPU, AsyncMock(return_value="nvidia")):
            installation = await make_manager().ensure_installed()

        assert installation.state == InstallState.INSTALLED
        assert installation.base_path == base_path
        assert store.get("installState") == "installed"
        assert store.get("basePath") == str(base_path)
        assert store.get("selectedDevice") == "nvidia"
        assert store.get("pypiMirror") == "https://pypi.example"
        assert store.get("detectedGpu") == "nvidia"
        assert (base_path / "models" / "checkpoints").is_dir()

        runtime.create.assert_awaited_once()
        ui.send_progress.assert_called_once_with(ProgressStatus.PYTHON_SETUP)
        ui.warn_git_missing.assert_not_awaited()
        assert "desktop:install_options_received" in events.names

    async def test_missing_git_warns(self, make_manager, ui):
        with patch(MANAGER_SHELL_CHECK, AsyncMock(return_value=False)):
            await make_manager().fresh_install()
        ui.warn_git_missing.assert_awaited_once()

    async def test_environment_failure_leaves_install_started(self, make_manager, store, runtime):
        runtime.create.side_effect = LauncherError("uv failed")
        with pytest.raises(LauncherError):
            await make_manager().fresh_install()
        assert store.get("installState") == "started"

    async def test_resume_starts_over(self, make_manager, store, ui, base_path):
        _record_install(store, base_path, state="started")
        installation = await make_manager().ensure_installed()

        ui.collect_install_options.assert_awaited_once()
        assert installation.state == InstallState.INSTALLED


# ============================================================================
# TestCustomNodeMigration
# ============================================================================

class TestCustomNodeMigration:

    def _options(self, base_path, source):
        return InstallOptions(
            install_path=str(base_path),
            migration_source_path=str(source),
            migration_item_ids=[MIGRATE_CUSTOM_NODES],
        )

    async def test_nodes_restored(self, make_manager, store, ui, base_path, tmp_path):
        source = tmp_path / "old"
        ui.collect_install_options.return_value = self._options(base_path, source)
        cli = MagicMock()
        cli.restore_custom_nodes = AsyncMock()

        await make_manager(manager_cli_factory=lambda runtime: cli).fresh_install()

        assert cli.restore_custom_nodes.await_args.args[0] == source
        assert store.get("migrateCustomNodesFrom") is None
        ui.notify.assert_not_called()

    async def test_failure_is_reported_and_install_completes(self, make_manager, store, ui, base_path, tmp_path):
        ui.collect_install_options.return_value = self._options(base_path, tmp_path / "old")
        cli = MagicMock()
        cli.restore_custom_nodes = AsyncMock(side_effect=ManagerCliError("Error calling cm-cli", 1))

        installation = await make_manager(manager_cli_factory=lambda runtime: cli).fresh_install()

        ui.notify.assert_called_once_with("Failed to migrate custom nodes", "Error calling cm-cli: exit code 1")
        assert store.get("migrateCustomNodesFrom") is None
        assert installation.state == InstallState.INSTALLED

    async def test_nothing_to_migrate(self, make_manager, runtime):
        assert await make_manager().migrate_custom_nodes(runtime) is None


# ============================================================================
# TestValidateInstallation
# ============================================================================

class TestValidateInstallation:

    async def test_valid_install_needs_no_interaction(self, make_manager, store, runtime, troubleshooting, base_path):
        _record_install(store, base_path)
        runtime.build()

        installation = await make_manager().ensure_installed()

        assert installation.is_valid
        troubleshooting.show_maintenance.assert_not_awaited()
        troubleshooting.wait_for_recheck.assert_not_awaited()
        assert troubleshooting.publish.call_count == 6

    async def test_waits_until_repaired(self, make_manager, store, runtime, troubleshooting, events, base_path):
        _record_install(store, base_path)
        rechecks = []

        async def recheck():
            rechecks.append(1)
            # Repaired on the second attempt
            if len(rechecks) == 2:
                runtime.build()

        troubleshooting.wait_for_recheck.side_effect = recheck

        installation = await make_manager().ensure_installed()

        assert installation.is_valid
        assert len(rechecks) == 2
        troubleshooting.show_maintenance.assert_awaited_once()
        assert events.names.count("validation:error_found") == 1
        assert ("validation:error_found", {"error": "venvDirectory"}) in events.events

    async def test_listener_removed_afterwards(self, make_manager, store, runtime, troubleshooting, base_path):
        _record_install(store, base_path)
        runtime.build()

        installation = await make_manager().ensure_installed()
        calls = troubleshooting.publish.call_count

        await installation.validate()
        assert troubleshooting.publish.call_count == calls

    async def test_upgraded_record_is_converted(self, make_manager, store, runtime, base_path):
        base_path.mkdir()
        store.set("basePath", str(base_path))
        runtime.build()

        installation = await make_manager().ensure_installed()

        assert installation.state == InstallState.INSTALLED
        assert store.get("installState") == "installed"

    async def test_package_upgrade_is_applied(self, make_manager, store, runtime, events, base_path):
        _record_install(store, base_path)
        runtime.build()
        runtime.has_requirements.side_effect = [RequirementsStatus.PACKAGE_UPGRADE, RequirementsStatus.OK]

        installation = await make_manager().ensure_installed()

        runtime.update_requirements.assert_awaited_once()
        assert runtime.has_requirements.await_count == 2
        assert installation.is_valid
        assert "installation_manager:manager_packages_update_end" in events.names

    async def test_package_upgrade_failure_is_logged(self, make_manager, store, runtime, events, base_path):
        _record_install(store, base_path)
        runtime.build()
        runtime.has_requirements.return_value = RequirementsStatus.PACKAGE_UPGRADE
        runtime.update_requirements.side_effect = LauncherError("uv failed")

        installation = await make_manager().ensure_installed()

        assert installation.is_valid
        assert "installation_manager:manager_packages_update_end" in events.names
