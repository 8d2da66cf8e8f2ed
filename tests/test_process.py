"""Tests for subprocess spawning and line streaming."""

import asyncio
import sys

from desktop_launcher.models.command import ProcessCallbacks
from desktop_launcher.utils.process import read_line, run_to_completion


def _reader(data: bytes, limit: int = 16) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    reader.feed_data(data)
    reader.feed_eof()
    return reader


# ============================================================================
# TestReadLine
# ============================================================================

class TestReadLine:

    async def test_short_lines(self):
        reader = _reader(b"one\ntwo\n")
        assert await read_line(reader) == b"one\n"
        assert await read_line(reader) == b"two\n"
        assert await read_line(reader) == b""

    async def test_line_longer_than_limit(self):
        long = b"x" * 100
        reader = _reader(long + b"\nafter\n")
        assert await read_line(reader) == long + b"\n"
        assert await read_line(reader) == b"after\n"

    async def test_unterminated_last_line(self):
        reader = _reader(b"x" * 40)
        assert await read_line(reader) == b"x" * 40
        assert await read_line(reader) == b""


# ============================================================================
# TestRunToCompletion
# ============================================================================

class TestRunToCompletion:

    async def test_captures_both_streams(self):
        result = await run_to_completion(
            sys.executable, ["-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(4)"]
        )
        assert result.exit_code == 4
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    async def test_long_line_does_not_block_child(self):
        script = "print('x' * 200000); [print('line', i) for i in range(50000)]"
        lines = []

        result = await asyncio.wait_for(
            run_to_completion(sys.executable, ["-c", script], callbacks=ProcessCallbacks(on_stdout=lines.append)),
            timeout=30,
        )

        assert result.exit_code == 0
        assert lines[0] == "x" * 200000 + "\n"
        assert lines[-1] == "line 49999\n"
        assert len(lines) == 50001
