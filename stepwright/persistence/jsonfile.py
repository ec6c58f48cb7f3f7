"""JSON tracking-file implementation of the step record store."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..errors import PersistenceError
from .models import StepRecord, WorkflowRecord, merge_step_record, merge_workflow_record
from .store import StepRecordStore

logger = logging.getLogger(__name__)


class JsonFileStepRecordStore(StepRecordStore):
    """Persist all records in a single ``template.json`` tracking file.

    The file holds ``{"workflow": {...}, "steps": {"<index>": {...}}}``.
    Writes go to a temporary file that replaces the original, so a crash
    never leaves a half-written tracking file behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # File helpers
    def _load(self) -> tuple[WorkflowRecord, dict[int, StepRecord]]:
        if not self.path.exists():
            return WorkflowRecord(), {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            workflow = WorkflowRecord.model_validate(data.get("workflow") or {})
            steps = {
                int(key): StepRecord.model_validate(value)
                for key, value in (data.get("steps") or {}).items()
            }
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning(
                f"Failed to read tracking file {self.path}, using defaults: {exc}"
            )
            return WorkflowRecord(), {}
        return workflow, steps

    def _dump(self, workflow: WorkflowRecord, steps: dict[int, StepRecord]) -> None:
        payload = {
            "workflow": workflow.model_dump(mode="json"),
            "steps": {
                str(idx): steps[idx].model_dump(mode="json") for idx in sorted(steps)
            },
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceError(
                f"Failed to write tracking file {self.path}: {exc}"
            ) from exc

    def _write_step(self, step_index: int, patch: dict[str, Any]) -> StepRecord:
        workflow, steps = self._load()
        record = merge_step_record(steps.get(step_index), step_index, patch)
        steps[step_index] = record
        workflow.last_updated = datetime.now(timezone.utc)
        self._dump(workflow, steps)
        return record

    def _write_workflow(self, patch: dict[str, Any]) -> WorkflowRecord:
        workflow, steps = self._load()
        workflow = merge_workflow_record(
            workflow, {**patch, "last_updated": datetime.now(timezone.utc)}
        )
        self._dump(workflow, steps)
        return workflow

    # ------------------------------------------------------------------
    # Store API
    async def read(self, step_index: int) -> StepRecord | None:
        _, steps = await asyncio.to_thread(self._load)
        return steps.get(step_index)

    async def write(self, step_index: int, patch: dict[str, Any]) -> StepRecord:
        async with self._lock:
            return await asyncio.to_thread(self._write_step, step_index, patch)

    async def list_records(self) -> list[StepRecord]:
        _, steps = await asyncio.to_thread(self._load)
        return [steps[idx] for idx in sorted(steps)]

    async def read_workflow(self) -> WorkflowRecord:
        workflow, _ = await asyncio.to_thread(self._load)
        return workflow

    async def write_workflow(self, patch: dict[str, Any]) -> WorkflowRecord:
        async with self._lock:
            return await asyncio.to_thread(self._write_workflow, patch)

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._dump, WorkflowRecord(), {})
