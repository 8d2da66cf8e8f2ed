"""Installation models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _to_camel(name: str) -> str:
    """Convert snake_case to camelCase for the persisted record."""
    parts = name.split("_")
    return parts[0] + "".join(w.title() for w in parts[1:])


class InstallState(str, Enum):
    """Lifecycle of an installation.

    ``UPGRADED`` marks a record written by an older release; it is collapsed
    back into ``INSTALLED`` once the record has been migrated.
    """

    STARTED = "started"
    INSTALLED = "installed"
    UPGRADED = "upgraded"


class TorchDevice(str, Enum):
    NVIDIA = "nvidia"
    MPS = "mps"
    CPU = "cpu"
    UNSUPPORTED = "unsupported"


class ProgressStatus(str, Enum):
    """Coarse progress reported to the UI during install and start."""

    INITIAL_STATE = "initial-state"
    PYTHON_SETUP = "python-setup"
    STARTING_SERVER = "starting-server"
    READY = "ready"
    ERROR = "error"


class InstallOptions(BaseModel):
    """Options the user confirmed in the install wizard."""

    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)

    install_path: str
    device: TorchDevice = TorchDevice.CPU
    auto_update: bool = True
    allow_metrics: bool = False
    migration_source_path: str | None = None
    migration_item_ids: list[str] = Field(default_factory=list)
    python_mirror: str = ""
    pypi_mirror: str = ""
    torch_mirror: str = ""
