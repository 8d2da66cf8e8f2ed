"""Async subprocess spawning with line-by-line output streaming."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Mapping, Optional, Sequence

from desktop_launcher.models.command import CommandResult, OutputSink, ProcessCallbacks

logger = logging.getLogger(__name__)


async def read_line(stream: asyncio.StreamReader) -> bytes:
    """Read one line of any length. Returns ``b''`` at end of stream.

    Lines longer than the reader's buffer limit are collected in chunks.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b'\n'))
            break
        except asyncio.IncompleteReadError as e:
            chunks.append(e.partial)
            break
        except asyncio.LimitOverrunError as e:
            chunks.append(await stream.read(max(e.consumed, 1)))
    return b''.join(chunks)


async def read_stream(stream: asyncio.StreamReader, sink: Optional[OutputSink]) -> None:
    """Read from a stream line by line and pass each decoded line to *sink*."""
    try:
        while True:
            line = await read_line(stream)
            if not line:
                break
            if sink is not None:
                sink(line.decode('utf-8', errors='replace'))
    except asyncio.CancelledError:
        pass


class StreamingProcess:
    """A spawned child whose stdout/stderr are being pumped to callbacks."""

    def __init__(self, process: asyncio.subprocess.Process, pumps: list[asyncio.Task]) -> None:
        self.process = process
        self._pumps = pumps

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def wait(self) -> int:
        """Wait for exit and for all buffered output to be delivered."""
        code = await self.process.wait()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        return code

    def terminate(self) -> None:
        self.process.terminate()

    def kill(self) -> None:
        self.process.kill()


async def spawn(
    program: str | Path,
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    callbacks: Optional[ProcessCallbacks] = None,
    cwd: Optional[str | Path] = None,
) -> StreamingProcess:
    """Start *program* with *env* layered over the current environment."""
    logger.info("Running command: %s %s in %s", program, " ".join(args), cwd)
    full_env = {**os.environ, **(env or {})}
    process = await asyncio.create_subprocess_exec(
        str(program),
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=full_env,
    )

    callbacks = callbacks or ProcessCallbacks()
    pumps = []
    if process.stdout:
        pumps.append(asyncio.create_task(read_stream(process.stdout, callbacks.on_stdout)))
    if process.stderr:
        pumps.append(asyncio.create_task(read_stream(process.stderr, callbacks.on_stderr)))
    return StreamingProcess(process, pumps)


async def run_to_completion(
    program: str | Path,
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    callbacks: Optional[ProcessCallbacks] = None,
    cwd: Optional[str | Path] = None,
) -> CommandResult:
    """Run a command, forwarding output to *callbacks* and capturing it."""
    stdout: list[str] = []
    stderr: list[str] = []
    callbacks = callbacks or ProcessCallbacks()

    def on_stdout(data: str) -> None:
        stdout.append(data)
        if callbacks.on_stdout:
            callbacks.on_stdout(data)

    def on_stderr(data: str) -> None:
        stderr.append(data)
        if callbacks.on_stderr:
            callbacks.on_stderr(data)

    child = await spawn(program, args, env, ProcessCallbacks(on_stdout, on_stderr), cwd)
    exit_code = await child.wait()
    return CommandResult(exit_code=exit_code, stdout="".join(stdout), stderr="".join(stderr))
