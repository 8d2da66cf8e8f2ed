"""CLI argument composition for the bundled server."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

from desktop_launcher.config import Settings
from desktop_launcher.models.server import ServerArgs

if TYPE_CHECKING:
    from desktop_launcher.services.app_settings import AppSettings

LAUNCH_ARGS_SETTING = "Comfy.Server.LaunchArgs"


def build_launch_args(args: Mapping[str, str]) -> list[str]:
    """Build CLI arguments from key-value pairs.

    Empty string values become bare flags, e.g. ``{'cpu': ''}`` => ``['--cpu']``.
    """
    result: list[str] = []
    for key, value in args.items():
        result.append(f"--{key}")
        if value != "":
            result.append(value)
    return result


def merge_launch_args(core: Mapping[str, str], user: Mapping[str, str]) -> dict[str, str]:
    """Overlay *core* on *user*; core keys always win on collision."""
    return {**user, **core}


def build_server_args(
    settings_view: Optional[Union[Mapping[str, Any], "AppSettings"]], config: Settings
) -> ServerArgs:
    """Compose server arguments from the app's saved launch flags and configuration.

    Saved flags cannot change the listen address or port; those come from
    configuration (including development overrides).
    """
    saved: Mapping[str, Any] = {}
    if settings_view is not None:
        saved = settings_view.get(LAUNCH_ARGS_SETTING) or {}

    extra = {str(k): "" if v is None else str(v) for k, v in saved.items()}
    extra.pop("listen", None)
    extra.pop("port", None)
    return ServerArgs(listen=config.effective_listen, port=str(config.effective_port), **extra)
