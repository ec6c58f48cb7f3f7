"""Store abstraction for step record persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import StepRecord, WorkflowRecord


class StepRecordStore(Protocol):
    """Protocol for step record persistence backends.

    Every method must be idempotent and must fail fast with
    ``PersistenceError`` instead of blocking indefinitely.
    """

    async def read(self, step_index: int) -> StepRecord | None:
        """Return the record for ``step_index`` if one exists."""

    async def write(self, step_index: int, patch: dict[str, Any]) -> StepRecord:
        """Apply ``patch`` to the step record, creating it when missing."""

    async def list_records(self) -> list[StepRecord]:
        """Return all step records ordered by step index."""

    async def read_workflow(self) -> WorkflowRecord:
        """Return the workflow-level record (defaults when absent)."""

    async def write_workflow(self, patch: dict[str, Any]) -> WorkflowRecord:
        """Apply ``patch`` to the workflow-level record."""

    async def clear(self) -> None:
        """Drop all persisted state."""
