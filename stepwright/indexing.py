"""Step index, chained prompt queue and step lifecycle tracking."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import QueuedPrompt
from .errors import PersistenceError
from .events import WorkflowEventEmitter, notify
from .persistence import ControllerConfig, StepRecord, StepRecordStore, WorkflowRecord
from .persistence.models import merge_step_record, merge_workflow_record
from .utils.retry import call_with_retry

logger = logging.getLogger(__name__)


class StepLifecyclePhase(str, Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    SESSION_INITIALIZED = "session_initialized"
    CHAIN_IN_PROGRESS = "chain_in_progress"
    COMPLETED = "completed"


class StepQueueState(BaseModel):
    """Snapshot of the current step's chained prompt queue."""

    queue: List[QueuedPrompt] = Field(default_factory=list)
    cursor: int = 0

    @property
    def exhausted(self) -> bool:
        return self.cursor >= len(self.queue)


class StepIndexManager:
    """Owns the chained prompt queue of the current step and all record writes.

    Records are mirrored in memory. Each mutation updates the mirror and is
    written to the store before the method returns. When the store keeps
    failing the error is logged and reported, and execution continues from
    the in-memory mirror.
    """

    def __init__(
        self,
        store: StepRecordStore,
        *,
        write_retries: int = 2,
        retry_base: float = 1.5,
        emitter: Optional[WorkflowEventEmitter] = None,
    ) -> None:
        self._store = store
        self._write_retries = write_retries
        self._retry_base = retry_base
        self._emitter = emitter
        self._records: Dict[int, StepRecord] = {}
        self._workflow = WorkflowRecord()
        self._queue: List[QueuedPrompt] = []
        self._cursor = 0
        self._queue_step: Optional[int] = None

    async def load(self) -> None:
        """Populate the in-memory mirror from the store."""
        try:
            records = await self._store.list_records()
            self._workflow = await self._store.read_workflow()
        except PersistenceError as exc:
            logger.error(f"Could not load step records, starting empty: {exc}")
            notify(self._emitter, "persistence_error", error=str(exc))
            return
        self._records = {record.step_index: record for record in records}

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _write(self, step_index: int, patch: dict[str, Any]) -> StepRecord:
        record = merge_step_record(self._records.get(step_index), step_index, patch)
        self._records[step_index] = record
        try:
            await call_with_retry(
                self._store.write,
                step_index,
                patch,
                retries=self._write_retries,
                retry_on=(PersistenceError,),
                base=self._retry_base,
            )
        except PersistenceError as exc:
            logger.error(
                f"Persisting step {step_index} failed; resume after a crash will not "
                f"be reliable for this step: {exc}"
            )
            notify(
                self._emitter, "persistence_error", step_index=step_index, error=str(exc)
            )
        return record

    async def _write_workflow(self, patch: dict[str, Any]) -> WorkflowRecord:
        self._workflow = merge_workflow_record(self._workflow, patch)
        try:
            await call_with_retry(
                self._store.write_workflow,
                patch,
                retries=self._write_retries,
                retry_on=(PersistenceError,),
                base=self._retry_base,
            )
        except PersistenceError as exc:
            logger.error(f"Persisting workflow state failed: {exc}")
            notify(self._emitter, "persistence_error", error=str(exc))
        return self._workflow

    # ------------------------------------------------------------------
    # Queue
    @property
    def queue_step(self) -> Optional[int]:
        return self._queue_step

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def queue_state(self) -> StepQueueState:
        return StepQueueState(queue=list(self._queue), cursor=self._cursor)

    async def init_queue(
        self, step_index: int, prompts: List[QueuedPrompt], cursor: int = 0
    ) -> None:
        """Load ``prompts`` as the chain of ``step_index`` starting at ``cursor``."""
        if cursor < 0 or cursor > len(prompts):
            raise ValueError(
                f"Queue cursor {cursor} out of range for {len(prompts)} prompts"
            )
        self._queue = list(prompts)
        self._cursor = cursor
        self._queue_step = step_index
        logger.debug(
            f"Step {step_index}: loaded {len(prompts)} chained prompts at cursor {cursor}"
        )
        await self._write(
            step_index,
            {
                "queue_cursor": cursor,
                "chained_prompts": [p.model_dump() for p in self._queue],
            },
        )

    async def advance(self) -> Optional[QueuedPrompt]:
        """Consume the prompt at the cursor and return it.

        Returns ``None`` without moving when the queue is exhausted.
        """
        if self.is_exhausted():
            return None
        prompt = self._queue[self._cursor]
        self._cursor += 1
        if self._queue_step is not None:
            await self._write(self._queue_step, {"queue_cursor": self._cursor})
        return prompt

    def peek_current(self) -> Optional[QueuedPrompt]:
        if self.is_exhausted():
            return None
        return self._queue[self._cursor]

    def is_exhausted(self) -> bool:
        return self._cursor >= len(self._queue)

    def is_queued_prompt(self, text: str) -> bool:
        """Return True when ``text`` is the content of the prompt at the cursor."""
        current = self.peek_current()
        return current is not None and text == current.content

    def reset(self) -> None:
        """Drop the working queue when leaving a step.

        The step record keeps its last persisted cursor; the step's terminal
        transition is recorded by ``step_completed``.
        """
        self._queue = []
        self._cursor = 0
        self._queue_step = None

    # ------------------------------------------------------------------
    # Step lifecycle
    def get_record(self, step_index: int) -> Optional[StepRecord]:
        return self._records.get(step_index)

    def records(self) -> List[StepRecord]:
        return [self._records[idx] for idx in sorted(self._records)]

    @property
    def workflow(self) -> WorkflowRecord:
        return self._workflow

    async def step_started(self, step_index: int) -> None:
        await self._write(
            step_index,
            {
                "started_at": datetime.now(timezone.utc),
                "completed_at": None,
                "session_id": None,
                "log_handle_id": None,
                "queue_cursor": 0,
                "chained_prompts": [],
                "completed_chains": [],
            },
        )
        if step_index not in self._workflow.not_completed_steps:
            await self._write_workflow(
                {
                    "not_completed_steps": sorted(
                        [*self._workflow.not_completed_steps, step_index]
                    )
                }
            )

    async def step_session_initialized(
        self,
        step_index: int,
        session_id: Optional[str],
        log_handle_id: Optional[str] = None,
    ) -> None:
        await self._write(
            step_index, {"session_id": session_id, "log_handle_id": log_handle_id}
        )

    async def update_step_session(
        self,
        step_index: int,
        session_id: Optional[str],
        log_handle_id: Optional[str] = None,
    ) -> None:
        """Record a new session handle if it changed."""
        record = self._records.get(step_index)
        patch: dict[str, Any] = {}
        if session_id and (record is None or record.session_id != session_id):
            patch["session_id"] = session_id
        if log_handle_id and (record is None or record.log_handle_id != log_handle_id):
            patch["log_handle_id"] = log_handle_id
        if patch:
            await self._write(step_index, patch)

    async def chain_completed(self, step_index: int, chain_index: int) -> None:
        record = self._records.get(step_index)
        chains = set(record.completed_chains) if record else set()
        chains.add(chain_index)
        await self._write(step_index, {"completed_chains": sorted(chains)})

    async def step_completed(self, step_index: int) -> None:
        """Record the step's terminal transition."""
        await self._write(
            step_index,
            {"completed_at": datetime.now(timezone.utc), "completed_chains": []},
        )
        await self.remove_from_not_completed(step_index)

    async def remove_from_not_completed(self, step_index: int) -> None:
        if step_index in self._workflow.not_completed_steps:
            await self._write_workflow(
                {
                    "not_completed_steps": [
                        idx
                        for idx in self._workflow.not_completed_steps
                        if idx != step_index
                    ]
                }
            )

    def is_step_completed(self, step_index: int) -> bool:
        record = self._records.get(step_index)
        return record is not None and record.completed_at is not None

    def get_completed_steps(self) -> List[int]:
        return [
            idx
            for idx in sorted(self._records)
            if self._records[idx].completed_at is not None
        ]

    def get_step_phase(self, step_index: int) -> StepLifecyclePhase:
        record = self._records.get(step_index)
        if record is None:
            if step_index in self._workflow.not_completed_steps:
                return StepLifecyclePhase.STARTED
            return StepLifecyclePhase.NOT_STARTED
        if record.completed_at is not None:
            return StepLifecyclePhase.COMPLETED
        if record.completed_chains:
            return StepLifecyclePhase.CHAIN_IN_PROGRESS
        if record.session_id:
            return StepLifecyclePhase.SESSION_INITIALIZED
        return StepLifecyclePhase.STARTED

    # ------------------------------------------------------------------
    # Workflow-level state
    async def set_autonomous_mode(self, enabled: bool) -> None:
        if self._workflow.autonomous_mode != enabled:
            await self._write_workflow({"autonomous_mode": enabled})

    async def set_resume_from_last_step(self, enabled: bool) -> None:
        await self._write_workflow({"resume_from_last_step": enabled})

    async def set_active_template(self, name: str) -> None:
        await self._write_workflow({"active_template": name})

    async def save_controller_config(self, controller: ControllerConfig) -> None:
        await self._write_workflow({"controller_config": controller.model_dump()})

    async def clear(self) -> None:
        """Forget all progress, in memory and in the store."""
        self._records = {}
        self._workflow = WorkflowRecord()
        self.reset()
        try:
            await self._store.clear()
        except PersistenceError as exc:
            logger.error(f"Clearing step records failed: {exc}")
            notify(self._emitter, "persistence_error", error=str(exc))
