"""Launcher configuration."""

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_HOME = Path.home() / ".comfy-desktop"


class Settings(BaseSettings):
    """Launcher settings loaded from environment variables.

    Constructed once by the entry point and passed to the components that
    need it.
    """

    model_config = SettingsConfigDict(
        env_prefix="COMFY_DESKTOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Development mode: enables overrides below and human-readable logs
    dev_mode: bool = False

    # Bundled resources (ComfyUI/, requirements/, uv/)
    resources_path: Path = Path("assets")
    uv_path: Path | None = None
    python_version: str = "3.12"

    # Persisted installation record
    state_file: Path = _DEFAULT_HOME / "config.json"

    # Logging
    log_dir: Path = _DEFAULT_HOME / "logs"
    log_level: str = "info"
    server_log_backups: int = 50

    # Server
    listen: str = "127.0.0.1"
    port: int = 8000
    health_path: str = "/queue"
    max_start_wait_seconds: float = 30 * 60  # custom node dependency installs can be slow
    health_check_interval_seconds: float = 1.0
    health_request_timeout_seconds: float = 5.0
    kill_timeout_seconds: float = 10.0

    # Development overrides, ignored unless dev_mode is set
    host_override: str | None = None
    port_override: int | None = None
    use_external_server: bool = False

    @model_validator(mode="after")
    def _validate_timeouts(self) -> "Settings":
        if self.health_check_interval_seconds <= 0:
            raise ValueError("HEALTH_CHECK_INTERVAL_SECONDS must be positive")
        if self.max_start_wait_seconds < self.health_check_interval_seconds:
            raise ValueError(
                "MAX_START_WAIT_SECONDS must be at least HEALTH_CHECK_INTERVAL_SECONDS"
            )
        return self

    @property
    def effective_listen(self) -> str:
        if self.dev_mode and self.host_override:
            return self.host_override
        return self.listen

    @property
    def effective_port(self) -> int:
        if self.dev_mode and self.port_override:
            return self.port_override
        return self.port

    @property
    def external_server(self) -> bool:
        return self.dev_mode and self.use_external_server

    @property
    def comfyui_path(self) -> Path:
        return self.resources_path / "ComfyUI"

    @property
    def extra_model_paths_config(self) -> Path:
        return self.state_file.parent / "extra_models_config.yaml"
