"""In-memory implementation of the step record store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from .models import StepRecord, WorkflowRecord, merge_step_record, merge_workflow_record
from .store import StepRecordStore


class InMemoryStepRecordStore(StepRecordStore):
    """Store step records in local memory.

    Useful for tests or when no persistence is configured. Data is not
    kept across process restarts.
    """

    def __init__(self) -> None:
        self._records: Dict[int, StepRecord] = {}
        self._workflow = WorkflowRecord()

    # ------------------------------------------------------------------
    async def read(self, step_index: int) -> StepRecord | None:
        record = self._records.get(step_index)
        return record.model_copy(deep=True) if record else None

    async def write(self, step_index: int, patch: dict[str, Any]) -> StepRecord:
        record = merge_step_record(self._records.get(step_index), step_index, patch)
        self._records[step_index] = record
        self._workflow.last_updated = datetime.now(timezone.utc)
        return record.model_copy(deep=True)

    async def list_records(self) -> list[StepRecord]:
        return [
            self._records[idx].model_copy(deep=True) for idx in sorted(self._records)
        ]

    async def read_workflow(self) -> WorkflowRecord:
        return self._workflow.model_copy(deep=True)

    async def write_workflow(self, patch: dict[str, Any]) -> WorkflowRecord:
        self._workflow = merge_workflow_record(
            self._workflow, {**patch, "last_updated": datetime.now(timezone.utc)}
        )
        return self._workflow.model_copy(deep=True)

    async def clear(self) -> None:
        self._records.clear()
        self._workflow = WorkflowRecord()
