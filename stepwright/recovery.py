"""Resume decisions made at workflow startup."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel

from .contracts import StepDefinition
from .persistence import StepRecord, WorkflowRecord


class ResumeDecision(str, Enum):
    START_FRESH = "start_fresh"
    RESUME_FROM_CHAIN = "resume_from_chain"
    RESUME_FROM_CRASH = "resume_from_crash"
    CONTINUE_AFTER_COMPLETED = "continue_after_completed"


class ResumeInfo(BaseModel):
    """Where a workflow run should pick up."""

    decision: ResumeDecision
    start_index: int = 0
    chain_index: Optional[int] = None
    session_id: Optional[str] = None
    log_handle_id: Optional[str] = None


class StepRecoveryAction(str, Enum):
    FRESH = "fresh"
    CONTINUE_SESSION = "continue_session"
    RESTORE_AWAITING = "restore_awaiting"


def get_resume_info(
    workflow: WorkflowRecord, records: Iterable[StepRecord]
) -> ResumeInfo:
    """Decide the starting step from persisted tracking state."""

    if not workflow.resume_from_last_step:
        return ResumeInfo(decision=ResumeDecision.START_FRESH)

    by_index = {record.step_index: record for record in records}

    mid_chain = [
        record
        for record in by_index.values()
        if record.completed_chains and record.completed_at is None
    ]
    if mid_chain:
        record = max(mid_chain, key=lambda r: r.step_index)
        return ResumeInfo(
            decision=ResumeDecision.RESUME_FROM_CHAIN,
            start_index=record.step_index,
            chain_index=max(record.completed_chains) + 1,
            session_id=record.session_id,
            log_handle_id=record.log_handle_id,
        )

    if workflow.not_completed_steps:
        start = max(workflow.not_completed_steps)
        record = by_index.get(start)
        return ResumeInfo(
            decision=ResumeDecision.RESUME_FROM_CRASH,
            start_index=start,
            session_id=record.session_id if record else None,
            log_handle_id=record.log_handle_id if record else None,
        )

    completed = [idx for idx, record in by_index.items() if record.completed_at]
    if completed:
        return ResumeInfo(
            decision=ResumeDecision.CONTINUE_AFTER_COMPLETED,
            start_index=max(completed) + 1,
        )

    return ResumeInfo(decision=ResumeDecision.START_FRESH)


def plan_step_recovery(
    record: Optional[StepRecord], step: StepDefinition
) -> StepRecoveryAction:
    """Choose how to bring ``step`` back after a restart.

    A step that already produced output for a chain is restored into the
    awaiting state rather than invoked again.
    """

    if record is None or record.completed_at is not None or not record.session_id:
        return StepRecoveryAction.FRESH
    if record.chained_prompts or step.chained_prompts:
        return StepRecoveryAction.RESTORE_AWAITING
    return StepRecoveryAction.CONTINUE_SESSION
