"""Shared fixtures for launcher tests.

Provides isolated Settings, a scripted fake CommandChannel, and factory
fixtures for RuntimeEnvironment instances rooted in tmp_path.
"""

import sys
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock

import pytest

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from desktop_launcher.config import Settings
from desktop_launcher.core.events import RecordingEventTracker
from desktop_launcher.models.command import CommandResult
from desktop_launcher.models.install import TorchDevice
from desktop_launcher.models.validation import RequirementsStatus
from desktop_launcher.services.runtime_environment import RuntimeEnvironment


NO_CHANGES_OUTPUT = "Resolved 42 packages in 120ms\nWould make no changes\n"
MANAGER_UPGRADE_OUTPUT = (
    "Resolved 12 packages in 80ms\n"
    "Would download 2 packages\n"
    "Would install 2 packages\n"
    " + toml==0.10.2\n"
    " + uv==0.5.1\n"
)


# ---------------------------------------------------------------------------
# Fake command channel
# ---------------------------------------------------------------------------

class FakeChannel:
    """CommandChannel that replays scripted results and records commands."""

    def __init__(self, results: list, env: dict):
        self._results = results
        self.env = env
        self.commands: list[str] = []
        self.closed = False

    @property
    def pid(self) -> Optional[int]:
        return None

    @property
    def is_alive(self) -> bool:
        return not self.closed

    async def run(self, command, on_output=None):
        self.commands.append(command)
        result = self._results.pop(0) if self._results else CommandResult(exit_code=0)
        if on_output is not None and result.stdout:
            on_output(result.stdout)
        return result

    async def run_and_wait(self, command, timeout, on_output=None):
        return await self.run(command, on_output)

    async def close(self):
        self.closed = True


class FakeChannelFactory:
    """Creates FakeChannels that share one queue of scripted results."""

    def __init__(self):
        self.results: list[CommandResult] = []
        self.channels: list[FakeChannel] = []

    def __call__(self, cwd, env):
        channel = FakeChannel(self.results, dict(env))
        self.channels.append(channel)
        return channel

    def queue(self, *exit_codes: int):
        for code in exit_codes:
            self.results.append(CommandResult(exit_code=code, stdout=f"exit {code}\n"))

    @property
    def commands(self) -> list[str]:
        return [c for channel in self.channels for c in channel.commands]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and rooted in tmp_path."""
    return Settings(
        _env_file=None,
        resources_path=tmp_path / "assets",
        state_file=tmp_path / "home" / "config.json",
        log_dir=tmp_path / "home" / "logs",
        uv_path=tmp_path / "bin" / "uv",
    )


@pytest.fixture
def events() -> RecordingEventTracker:
    return RecordingEventTracker()


@pytest.fixture
def channel_factory() -> FakeChannelFactory:
    return FakeChannelFactory()


@pytest.fixture
def make_runtime(tmp_path, channel_factory, events):
    """Factory for RuntimeEnvironment instances using the fake channel."""

    def _make(**kwargs) -> RuntimeEnvironment:
        options = dict(
            resources_path=tmp_path / "assets",
            selected_device=TorchDevice.CPU,
            uv_path=tmp_path / "bin" / "uv",
            channel_factory=channel_factory,
            events=events,
            platform="linux",
        )
        options.update(kwargs)
        return RuntimeEnvironment(tmp_path / "base", **options)

    return _make


# ---------------------------------------------------------------------------
# Fake runtime
# ---------------------------------------------------------------------------

class FakeRuntime:
    """Just enough of RuntimeEnvironment for validation and install flows."""

    def __init__(self, base_path: Path, uv_path: Path, requirements=RequirementsStatus.OK):
        self.base_path = base_path
        self.venv_path = base_path / ".venv"
        self.python_interpreter_path = self.venv_path / "bin" / "python"
        self.uv_path = uv_path
        self.has_requirements = AsyncMock(return_value=requirements)
        self.remove_venv_directory = AsyncMock(return_value=True)
        self.update_requirements = AsyncMock()
        self.create = AsyncMock(side_effect=lambda callbacks=None: self.build())

    def build(self):
        """Lay out the files validation looks for."""
        self.venv_path.mkdir(parents=True, exist_ok=True)
        self.python_interpreter_path.parent.mkdir(parents=True, exist_ok=True)
        self.python_interpreter_path.touch()
        self.uv_path.parent.mkdir(parents=True, exist_ok=True)
        self.uv_path.touch()
        return self
