"""Command execution over a long-lived interactive shell.

A shell session has no "command finished" event, so completion is detected
with a sentinel: after each command the channel echoes a unique marker
followed by the shell's last-exit-status expression, then scans output lines
(ANSI escapes removed) for a line starting with that marker.

POSIX shells print a number for ``$?``; PowerShell prints ``True``/``False``.
``False`` maps to ``EXIT_CODE_FALSE`` and unparsable text to
``EXIT_CODE_UNPARSABLE`` so callers can tell "failed" from "unknown".
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
import uuid
from pathlib import Path
from typing import Mapping, Optional, Protocol, runtime_checkable

from desktop_launcher.exceptions import (
    ChannelBusyError,
    CommandChannelClosedError,
    CommandTimeoutError,
)
from desktop_launcher.models.command import (
    EXIT_CODE_FALSE,
    EXIT_CODE_UNPARSABLE,
    CommandResult,
    OutputSink,
)
from desktop_launcher.utils.ansi import strip_ansi
from desktop_launcher.utils.process import read_line
from desktop_launcher.utils.shell import default_shell, is_powershell

logger = logging.getLogger(__name__)

_LINE_SPLIT = re.compile(r"\r\n|\n|\r")
_LEADING_INT = re.compile(r"^[+-]?\d+")

CLOSE_TIMEOUT = 5  # seconds to wait for the shell to exit after terminate


@runtime_checkable
class CommandChannel(Protocol):
    """Runs one command at a time and reports its exit code."""

    @property
    def pid(self) -> Optional[int]: ...

    @property
    def is_alive(self) -> bool: ...

    async def run(self, command: str, on_output: Optional[OutputSink] = None) -> CommandResult: ...

    async def run_and_wait(
        self, command: str, timeout: float, on_output: Optional[OutputSink] = None
    ) -> CommandResult: ...

    async def close(self) -> None: ...


def new_marker() -> str:
    return f"_-end-{uuid.uuid4().hex}:"


def find_exit_marker(data: str, marker: str) -> Optional[str]:
    """Return the text after *marker* if any line of *data* starts with it."""
    for line in _LINE_SPLIT.split(strip_ansi(data)):
        if line.startswith(marker):
            return line[len(marker):].strip()
    return None


def parse_exit_code(text: str) -> int:
    # PowerShell outputs True / False for success
    if text == "True":
        return 0
    if text == "False":
        return EXIT_CODE_FALSE
    match = _LEADING_INT.match(text)
    if not match:
        logger.warning("Unable to parse exit code: %r", text)
        return EXIT_CODE_UNPARSABLE
    return int(match.group(0))


def exit_trailer(marker: str, powershell: bool = False) -> str:
    """Shell line that prints the marker and the previous command's status.

    The marker is preceded by a newline so it starts a line even when the
    command's output does not end with one.
    """
    if powershell:
        return f'echo "`n{marker}$?"'
    return f"printf '\\n%s%s\\n' \"{marker}\" \"$?\""


def _without_trailer_newline(captured: list[str]) -> str:
    """Join captured lines, dropping the newline the exit trailer printed."""
    output = "".join(captured)
    for ending in ("\r\n", "\n"):
        if output.endswith(ending):
            return output[:-len(ending)]
    return output


class ShellCommandChannel:
    """CommandChannel backed by a shell process reading commands from stdin.

    The shell is spawned lazily on the first command and lives until
    :meth:`close`. Callers must not interleave commands.
    """

    def __init__(
        self,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        shell: Optional[list[str]] = None,
        platform: str = sys.platform,
    ) -> None:
        self.cwd = cwd
        self.env = dict(env or {})
        self.shell = shell or default_shell(platform)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._busy = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _ensure_started(self) -> asyncio.subprocess.Process:
        if self._process is None or self._process.returncode is not None:
            logger.debug("Starting shell %s in %s", self.shell, self.cwd)
            self._process = await asyncio.create_subprocess_exec(
                *self.shell,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(self.cwd),
                env={**os.environ, **self.env},
            )
        return self._process

    async def run(self, command: str, on_output: Optional[OutputSink] = None) -> CommandResult:
        """Run *command* and resolve with its exit code.

        Every output line, including the marker line, is passed to
        *on_output* verbatim.
        """
        if self._busy:
            raise ChannelBusyError("A command is already running on this channel")
        self._busy = True
        try:
            process = await self._ensure_started()
            assert process.stdin is not None and process.stdout is not None

            marker = new_marker()
            try:
                trailer = exit_trailer(marker, is_powershell(self.shell))
                process.stdin.write(f"{command}\n{trailer}\n".encode('utf-8'))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise CommandChannelClosedError(f"Shell is not accepting input: {e}") from e

            captured: list[str] = []
            while True:
                line = await read_line(process.stdout)
                if not line:
                    raise CommandChannelClosedError(
                        f"Shell exited before the command completed: {command}"
                    )
                text = line.decode('utf-8', errors='replace')
                if on_output is not None:
                    on_output(text)
                exit_text = find_exit_marker(text, marker)
                if exit_text is not None:
                    return CommandResult(
                        exit_code=parse_exit_code(exit_text),
                        stdout=_without_trailer_newline(captured),
                    )
                captured.append(text)
        finally:
            self._busy = False

    async def run_and_wait(
        self, command: str, timeout: float, on_output: Optional[OutputSink] = None
    ) -> CommandResult:
        """Like :meth:`run`, but terminate the shell if *timeout* elapses."""
        try:
            return await asyncio.wait_for(self.run(command, on_output), timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise CommandTimeoutError(f"Command did not complete within {timeout}s: {command}")

    async def close(self) -> None:
        """Terminate the shell. Safe to call repeatedly."""
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return

        if process.stdin is not None:
            process.stdin.close()
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Shell %s did not exit, killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
