"""Platform shell selection."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from pathlib import Path

from desktop_launcher.exceptions import UnsupportedPlatformError

logger = logging.getLogger(__name__)


def default_shell(platform: str = sys.platform) -> list[str]:
    """Command line for an interactive shell reading commands from stdin."""
    if platform == 'win32':
        return ['powershell.exe', '-NoLogo', '-NoProfile', '-Command', '-']
    if platform == 'darwin':
        candidates = ['zsh', 'bash']
    else:
        candidates = ['bash']
    for name in candidates:
        found = shutil.which(name)
        if found:
            return [found, '--noprofile', '--norc'] if name == 'bash' else [found, '-f']
    return ['/bin/sh']


def is_powershell(shell: list[str]) -> bool:
    return Path(shell[0]).name.lower().startswith(('powershell', 'pwsh'))


def activate_environment_command(venv_path: Path, platform: str = sys.platform) -> str:
    """Shell lines that activate *venv_path* in an interactive session."""
    if platform in ('darwin', 'linux'):
        return f'source "{venv_path}/bin/activate"\n'
    if platform == 'win32':
        return (
            'Set-ExecutionPolicy Unrestricted -Scope Process -Force\n'
            f'& "{venv_path}\\Scripts\\activate.ps1"\n'
            'Set-ExecutionPolicy Default -Scope Process -Force\n'
        )
    raise UnsupportedPlatformError(f"Unsupported platform: {platform}")


async def can_execute_shell_command(command: str) -> bool:
    """True if *command* runs and exits 0."""
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        return await process.wait() == 0
    except OSError as e:
        logger.debug("Shell command %r could not be run: %s", command, e)
        return False
