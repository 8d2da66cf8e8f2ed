"""Terminal implementations of the install flow's UI collaborators."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional, TextIO

from desktop_launcher.models.install import InstallOptions, ProgressStatus
from desktop_launcher.models.validation import ValidationReport, ValidationStatus

logger = logging.getLogger(__name__)


class Color:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    CYAN = '\033[36m'
    GRAY = '\033[90m'


_STATUS_COLORS = {
    ValidationStatus.OK: Color.GREEN,
    ValidationStatus.WARNING: Color.YELLOW,
    ValidationStatus.ERROR: Color.RED,
}


class _ConsoleWriter:
    def __init__(self, out: Optional[TextIO] = None, color_enabled: Optional[bool] = None) -> None:
        self.out = out or sys.stdout
        self.color_enabled = self.out.isatty() if color_enabled is None else color_enabled

    def _colorize(self, text: str, color: str) -> str:
        if not self.color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    def _print(self, text: str = '') -> None:
        print(text, file=self.out, flush=True)


class ConsoleInstallerUI(_ConsoleWriter):
    """Install UI for the terminal.

    Options given on the command line are used as-is; without an install
    path the user is prompted for one.
    """

    def __init__(
        self,
        preset: Optional[InstallOptions] = None,
        out: Optional[TextIO] = None,
        color_enabled: Optional[bool] = None,
    ) -> None:
        super().__init__(out, color_enabled)
        self.preset = preset

    async def collect_install_options(self) -> InstallOptions:
        if self.preset is not None:
            return self.preset

        install_path = ''
        while not install_path:
            install_path = (await asyncio.to_thread(input, 'Install location: ')).strip()
        return InstallOptions(install_path=install_path)

    def send_log(self, data: str) -> None:
        self.out.write(data)
        self.out.flush()

    def send_progress(self, status: ProgressStatus) -> None:
        self._print(self._colorize(f"==> {status.value}", Color.CYAN + Color.BOLD))

    def notify(self, title: str, body: str) -> None:
        self._print(self._colorize(f"⚠️  {title}", Color.YELLOW + Color.BOLD))
        self._print(f"   {body}")

    async def warn_git_missing(self) -> None:
        self._print(self._colorize('⚠️  git was not found on this device.', Color.YELLOW + Color.BOLD))
        self._print('   Install git from https://git-scm.com/downloads/ to use custom nodes.')


class ConsoleTroubleshootingUI(_ConsoleWriter):
    """Prints validation results and waits for Enter before each recheck."""

    def __init__(self, out: Optional[TextIO] = None, color_enabled: Optional[bool] = None) -> None:
        super().__init__(out, color_enabled)
        self.latest: Optional[ValidationReport] = None

    def publish(self, report: ValidationReport) -> None:
        self.latest = report

    def print_report(self, report: Optional[ValidationReport] = None) -> None:
        report = report or self.latest
        if report is None:
            return
        for check, status in report.items():
            marker = self._colorize('•', _STATUS_COLORS[status])
            self._print(f"  {marker} {check}: {status.value}")

    async def show_maintenance(self) -> None:
        self._print(f"\n{self._colorize('❌ Problems were found with the installation:', Color.RED + Color.BOLD)}\n")

    async def wait_for_recheck(self) -> None:
        self.print_report()
        await asyncio.to_thread(input, '\nFix the issues above, then press Enter to check again... ')
