"""Start / end / error event tracking around operations."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class EventTracker(Protocol):
    def track(self, event_name: str, properties: Optional[dict[str, Any]] = None) -> None: ...


class LoggingEventTracker:
    """Default tracker: events go to the debug log only."""

    def track(self, event_name: str, properties: Optional[dict[str, Any]] = None) -> None:
        logger.debug("event %s %s", event_name, properties or {})


class RecordingEventTracker:
    """Keeps every event in memory, in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def track(self, event_name: str, properties: Optional[dict[str, Any]] = None) -> None:
        self.events.append((event_name, dict(properties or {})))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def error_properties(error: BaseException) -> dict[str, Any]:
    return {
        'error_name': type(error).__name__,
        'error_message': str(error),
    }


async def track_event(
    tracker: EventTracker,
    event_name: str,
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await ``operation(*args, **kwargs)`` between ``_start`` and ``_end``/``_error`` events.

    Errors are tracked and re-raised unchanged.
    """
    tracker.track(f"{event_name}_start")
    try:
        result = await operation(*args, **kwargs)
    except Exception as error:
        tracker.track(f"{event_name}_error", error_properties(error))
        raise
    tracker.track(f"{event_name}_end")
    return result
