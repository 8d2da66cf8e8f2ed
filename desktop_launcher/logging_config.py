"""Logging setup for the launcher and the supervised server's output."""

import logging
from logging.handlers import RotatingFileHandler

from desktop_launcher.config import Settings
from desktop_launcher.utils.ansi import AnsiStripFilter

SERVER_OUTPUT_LOGGER = "desktop_launcher.server_output"
SERVER_LOG_FILE = "comfyui.log"

_JSON_FORMAT = '{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}'
_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    """Configure root logging and the rotating server output log."""
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=_TEXT_FORMAT if settings.dev_mode else _JSON_FORMAT,
    )

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        settings.log_dir / SERVER_LOG_FILE,
        maxBytes=10 * 1024 * 1024,
        backupCount=settings.server_log_backups,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    handler.addFilter(AnsiStripFilter())

    server_logger = logging.getLogger(SERVER_OUTPUT_LOGGER)
    server_logger.setLevel(logging.INFO)
    server_logger.addHandler(handler)
    # Server output reaches the console through the supervisor's output sink
    server_logger.propagate = False
