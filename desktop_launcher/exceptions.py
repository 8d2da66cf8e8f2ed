"""Launcher exceptions."""

from __future__ import annotations

from typing import Optional


class LauncherError(Exception):
    """Base exception for launcher operations."""

    pass


class UnsupportedPlatformError(LauncherError):
    """Raised when the current OS has no bundled tooling."""

    pass


class CommandExitError(LauncherError):
    """Raised when an external tool exits non-zero.

    Carries the captured output so the failure can be diagnosed from logs.
    """

    def __init__(self, description: str, exit_code: Optional[int], output: str = "") -> None:
        message = f"{description}: exit code {exit_code}"
        if output:
            message += f"\n{output.rstrip()}"
        super().__init__(message)
        self.description = description
        self.exit_code = exit_code
        self.output = output


class ManagerCliError(CommandExitError):
    """Raised when the bundled manager plugin CLI fails."""

    pass


class CommandChannelError(LauncherError):
    """Base exception for the interactive command channel."""

    pass


class ChannelBusyError(CommandChannelError):
    """Raised when a command is sent while another is still running."""

    pass


class CommandChannelClosedError(CommandChannelError):
    """Raised when the shell ends before the completion marker is seen."""

    pass


class CommandTimeoutError(CommandChannelError):
    """Raised when a command does not complete within the caller's timeout."""

    pass


class ServerAlreadyRunningError(LauncherError):
    """Raised when starting a server that is already running."""

    pass


class ServerStartError(LauncherError):
    """Raised when the server fails to become ready."""

    pass


class ServerExitedError(ServerStartError):
    """Raised when the server process exits non-zero while starting."""

    def __init__(self, exit_code: Optional[int]) -> None:
        super().__init__(f"Python process exited with code {exit_code}")
        self.exit_code = exit_code


class ServerStartTimeoutError(ServerStartError):
    """Raised when the server is not ready within the start timeout.

    The process may still be alive and starting.
    """

    pass


class ServerKillError(LauncherError):
    """Raised when the kill signal could not be sent."""

    pass


class ServerKillTimeoutError(ServerKillError):
    """Raised when the server does not exit after being signalled."""

    pass


class SettingsLockedError(LauncherError):
    """Raised when writing settings after they were handed to the server."""

    pass
