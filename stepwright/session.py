"""Per-step session bookkeeping for the runner."""

from __future__ import annotations

import logging
from typing import Literal, Optional

logger = logging.getLogger(__name__)

SessionState = Literal["idle", "running", "awaiting", "completed"]


class StepSession:
    """Tracks one step instance while it is being worked on.

    ``has_completed_once`` guards chain loading so a resumed or continued
    step never gets its queue loaded twice.
    """

    def __init__(
        self,
        step_index: int,
        session_id: Optional[str] = None,
        log_handle_id: Optional[str] = None,
        has_completed_once: bool = False,
    ) -> None:
        self.step_index = step_index
        self.session_id = session_id
        self.log_handle_id = log_handle_id
        self.has_completed_once = has_completed_once
        self.state: SessionState = "idle"

    def mark_running(self) -> None:
        self.state = "running"

    def mark_awaiting(self) -> None:
        self.state = "awaiting"
        self.has_completed_once = True

    def mark_completed(self) -> None:
        self.state = "completed"

    def update(self, session_id: Optional[str], log_handle_id: Optional[str]) -> None:
        if session_id:
            self.session_id = session_id
        if log_handle_id:
            self.log_handle_id = log_handle_id

    def __repr__(self) -> str:
        return (
            f"StepSession(step_index={self.step_index}, session_id={self.session_id!r}, "
            f"state={self.state!r}, has_completed_once={self.has_completed_once})"
        )
