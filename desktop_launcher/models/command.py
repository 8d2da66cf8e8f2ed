"""Command execution models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

OutputSink = Callable[[str], None]

# Reserved exit codes produced by the sentinel protocol instead of raising.
EXIT_CODE_FALSE = -999
EXIT_CODE_UNPARSABLE = -998


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command invocation."""

    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ProcessCallbacks:
    """Receivers for process output, called once per decoded line."""

    on_stdout: Optional[OutputSink] = None
    on_stderr: Optional[OutputSink] = None

    @classmethod
    def single(cls, sink: Optional[OutputSink]) -> "ProcessCallbacks":
        """Route both streams to one sink."""
        return cls(on_stdout=sink, on_stderr=sink)
