"""Collaborators the install flow talks to.

The state machine never renders anything itself. A desktop shell, a web page
or the terminal (:mod:`desktop_launcher.install.console_ui`) implements these.
"""

from __future__ import annotations

from typing import Protocol

from desktop_launcher.models.install import InstallOptions, ProgressStatus
from desktop_launcher.models.validation import ValidationReport


class InstallerUI(Protocol):
    async def collect_install_options(self) -> InstallOptions:
        """Wait until the user has confirmed all install options."""
        ...

    def send_log(self, data: str) -> None: ...

    def send_progress(self, status: ProgressStatus) -> None: ...

    def notify(self, title: str, body: str) -> None:
        """Show a non-fatal notification."""
        ...

    async def warn_git_missing(self) -> None: ...


class TroubleshootingUI(Protocol):
    def publish(self, report: ValidationReport) -> None:
        """Receive every validation report update."""
        ...

    async def show_maintenance(self) -> None:
        """Called once, the first time a report contains an error."""
        ...

    async def wait_for_recheck(self) -> None:
        """Block until the user asks for the installation to be checked again."""
        ...
