"""Tests for the sentinel-based command channel.

Parsing helpers are tested directly; the shell implementation is exercised
against a real /bin/sh.
"""

import asyncio
import shlex
import sys

import pytest

from desktop_launcher.core.command_channel import (
    CommandChannel,
    ShellCommandChannel,
    exit_trailer,
    find_exit_marker,
    new_marker,
    parse_exit_code,
)
from desktop_launcher.exceptions import ChannelBusyError, CommandChannelClosedError, CommandTimeoutError
from desktop_launcher.models.command import EXIT_CODE_FALSE, EXIT_CODE_UNPARSABLE

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh")


# ============================================================================
# TestParseExitCode
# ============================================================================

class TestParseExitCode:

    def test_numeric(self):
        assert parse_exit_code("0") == 0
        assert parse_exit_code("127") == 127

    def test_leading_integer_is_used(self):
        assert parse_exit_code("2 trailing") == 2

    def test_powershell_true_is_success(self):
        assert parse_exit_code("True") == 0

    def test_powershell_false_is_sentinel(self):
        assert parse_exit_code("False") == EXIT_CODE_FALSE

    def test_unparsable_is_distinct_sentinel(self):
        assert parse_exit_code("garbage") == EXIT_CODE_UNPARSABLE
        assert EXIT_CODE_UNPARSABLE != EXIT_CODE_FALSE


# ============================================================================
# TestFindExitMarker
# ============================================================================

class TestFindExitMarker:

    def test_marker_is_unique(self):
        assert new_marker() != new_marker()
        assert new_marker().startswith("_-end-")

    def test_trailer_prints_marker_and_status_on_a_new_line(self):
        assert exit_trailer("_-end-abc:") == "printf '\\n%s%s\\n' \"_-end-abc:\" \"$?\""

    def test_powershell_trailer(self):
        assert exit_trailer("_-end-abc:", powershell=True) == 'echo "`n_-end-abc:$?"'

    def test_finds_marker_line(self):
        marker = "_-end-abc:"
        assert find_exit_marker(f"some output\r\n{marker}0\r\n", marker) == "0"

    def test_strips_ansi_before_matching(self):
        marker = "_-end-abc:"
        data = f"\x1b[32m{marker}1\x1b[0m\n"
        assert find_exit_marker(data, marker) == "1"

    def test_marker_must_start_the_line(self):
        marker = "_-end-abc:"
        assert find_exit_marker(f'echo "{marker}$?"', marker) is None

    def test_no_marker(self):
        assert find_exit_marker("Resolved 3 packages\n", "_-end-abc:") is None


# ============================================================================
# TestShellCommandChannel
# ============================================================================

@posix_only
@pytest.mark.platform_posix
class TestShellCommandChannel:

    def _channel(self, tmp_path):
        return ShellCommandChannel(tmp_path, shell=["/bin/sh"])

    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(self._channel(tmp_path), CommandChannel)

    async def test_success_exit_code(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            result = await channel.run("true")
        finally:
            await channel.close()
        assert result.exit_code == 0
        assert result.ok

    async def test_failure_exit_code(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            result = await channel.run("sh -c 'exit 3'")
        finally:
            await channel.close()
        assert result.exit_code == 3

    async def test_output_is_captured_and_streamed(self, tmp_path):
        channel = self._channel(tmp_path)
        lines = []
        try:
            result = await channel.run("echo hello; echo world", lines.append)
        finally:
            await channel.close()
        assert result.stdout == "hello\nworld\n"
        # The trailer's own output is forwarded to the sink too
        assert lines[:3] == ["hello\n", "world\n", "\n"]
        assert lines[3].startswith("_-end-")

    async def test_shell_is_reused_between_commands(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            await channel.run("GREETING=hi")
            pid = channel.pid
            result = await channel.run('echo "$GREETING"')
        finally:
            await channel.close()
        assert result.stdout == "hi\n"
        assert channel.pid is None
        assert pid is not None

    async def test_env_is_applied(self, tmp_path):
        channel = ShellCommandChannel(tmp_path, {"VIRTUAL_ENV": "/venv"}, shell=["/bin/sh"])
        try:
            result = await channel.run('echo "$VIRTUAL_ENV"')
        finally:
            await channel.close()
        assert result.stdout == "/venv\n"

    async def test_stderr_is_merged(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            result = await channel.run("echo oops 1>&2")
        finally:
            await channel.close()
        assert result.stdout == "oops\n"

    async def test_shell_exit_raises_closed(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            with pytest.raises(CommandChannelClosedError):
                await channel.run("exit 0")
        finally:
            await channel.close()

    async def test_concurrent_run_is_rejected(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            first = asyncio.create_task(channel.run("sleep 0.5"))
            await asyncio.sleep(0.1)
            with pytest.raises(ChannelBusyError):
                await channel.run("true")
            assert (await first).exit_code == 0
        finally:
            await channel.close()

    async def test_run_and_wait_timeout_closes_shell(self, tmp_path):
        channel = self._channel(tmp_path)
        with pytest.raises(CommandTimeoutError):
            await channel.run_and_wait("exec sleep 5", timeout=0.2)
        assert not channel.is_alive

    async def test_close_is_idempotent(self, tmp_path):
        channel = self._channel(tmp_path)
        await channel.run("true")
        await channel.close()
        await channel.close()
        assert not channel.is_alive

    async def test_output_without_trailing_newline_completes(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            result = await channel.run_and_wait("printf foo", timeout=5)
        finally:
            await channel.close()
        assert result.exit_code == 0
        assert result.stdout == "foo"

    async def test_no_output(self, tmp_path):
        channel = self._channel(tmp_path)
        try:
            result = await channel.run("true")
        finally:
            await channel.close()
        assert result.stdout == ""

    async def test_long_line_is_read_whole(self, tmp_path):
        channel = self._channel(tmp_path)
        lines = []
        try:
            result = await channel.run_and_wait(
                f"{shlex.quote(sys.executable)} -c \"print('x' * 200000); print('done')\"",
                timeout=10,
                on_output=lines.append,
            )
        finally:
            await channel.close()
        assert result.exit_code == 0
        assert result.stdout == "x" * 200000 + "\ndone\n"
        assert lines[0] == "x" * 200000 + "\n"
