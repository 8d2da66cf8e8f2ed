"""Terminal escape sequence handling."""

import logging
import re

# CSI / single-character escape sequences emitted by shells and progress bars
ANSI_CODES = re.compile(r"[\u001B\u009B][#();?\[]*(?:\d{1,4}(?:;\d{0,4})*)?[\d<=>A-ORZcf-nqry]")


def strip_ansi(text: str) -> str:
    return ANSI_CODES.sub("", text)


class AnsiStripFilter(logging.Filter):
    """Removes escape sequences from records before they reach a file."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = strip_ansi(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(
                strip_ansi(a) if isinstance(a, str) else a for a in record.args
            )
        return True
