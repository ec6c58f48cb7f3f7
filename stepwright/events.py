"""UI-facing notification sinks."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class WorkflowEventEmitter(Protocol):
    """Fire-and-forget sink for workflow notifications."""

    def emit(self, event: str, **data: Any) -> None:
        """Publish ``event`` with keyword payload."""


class LoggingEventEmitter:
    """Emitter that writes every event to the log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def emit(self, event: str, **data: Any) -> None:
        details = " ".join(f"{key}={value}" for key, value in data.items())
        logger.log(self._level, f"[{event}] {details}".rstrip())


class RecordingEventEmitter:
    """Emitter that keeps events in memory for inspection."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, **data: Any) -> None:
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def notify(emitter: Optional[WorkflowEventEmitter], event: str, **data: Any) -> None:
    """Deliver ``event`` to ``emitter`` without ever blocking the engine on it."""
    if emitter is None:
        return
    try:
        emitter.emit(event, **data)
    except Exception:
        logger.exception(f"Event emitter failed while handling '{event}'")
