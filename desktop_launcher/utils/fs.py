"""Filesystem helpers."""

import asyncio
import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write(target: Path, content: str) -> None:
    """Write content to a file atomically via a temp file + rename.

    On POSIX, Path.replace() is atomic within the same filesystem.
    This prevents partial writes if the process is interrupted.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + '.tmp')
    tmp_path.write_text(content, encoding='utf-8')
    tmp_path.replace(target)


def path_accessible(path: Path) -> bool:
    return os.access(path, os.F_OK)


async def remove_directory(path: Path, description: str) -> bool:
    """Recursively remove a directory. Returns False if removal failed.

    A missing directory is not an error.
    """
    if not path_accessible(path):
        logger.warning("Attempted to remove %s, but directory does not exist [%s]", description, path)
        return True

    logger.info("Removing %s [%s]", description, path)
    try:
        await asyncio.to_thread(shutil.rmtree, path)
    except OSError as e:
        logger.error("Error removing %s: %s", description, e)
        return False
    return True
