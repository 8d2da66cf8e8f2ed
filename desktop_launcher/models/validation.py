"""Validation models."""

from __future__ import annotations

from enum import Enum
from typing import Iterator, Mapping, Optional


class ValidationStatus(str, Enum):
    OK = "OK"
    WARNING = "warning"
    ERROR = "error"


class RequirementsStatus(str, Enum):
    """Result of comparing the environment against the pinned requirements."""

    OK = "OK"
    ERROR = "error"
    PACKAGE_UPGRADE = "package-upgrade"


class ValidationReport(Mapping[str, ValidationStatus]):
    """Mapping of check name to status, built up while validation runs.

    Checks that have not reported yet are simply absent.
    """

    def __init__(self, entries: Optional[Mapping[str, ValidationStatus]] = None) -> None:
        self._entries: dict[str, ValidationStatus] = dict(entries or {})

    def __getitem__(self, key: str) -> ValidationStatus:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        body = ", ".join(f"{k}={v.value}" for k, v in self._entries.items())
        return f"ValidationReport({body})"

    def set(self, check: str, status: ValidationStatus) -> None:
        self._entries[check] = status

    def copy(self) -> "ValidationReport":
        return ValidationReport(self._entries)

    @property
    def errors(self) -> list[str]:
        return [k for k, v in self._entries.items() if v == ValidationStatus.ERROR]

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def is_valid(self) -> bool:
        """Valid when no entry is an error."""
        return not self.has_errors

    def to_dict(self) -> dict[str, str]:
        return {k: v.value for k, v in self._entries.items()}
