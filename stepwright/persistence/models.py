"""Data models for persisted step and workflow state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import QueuedPrompt


class StepRecord(BaseModel):
    """Durable record of one step's execution."""

    step_index: int
    session_id: Optional[str] = None
    log_handle_id: Optional[str] = None
    queue_cursor: int = 0
    chained_prompts: list[QueuedPrompt] = Field(default_factory=list)
    completed_chains: list[int] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ControllerConfig(BaseModel):
    """Controller agent session used in autonomous mode."""

    agent_id: str
    session_id: Optional[str] = None
    log_handle_id: Optional[str] = None


class WorkflowRecord(BaseModel):
    """Workflow-level tracking state."""

    active_template: Optional[str] = None
    last_updated: Optional[datetime] = None
    not_completed_steps: list[int] = Field(default_factory=list)
    resume_from_last_step: bool = True
    autonomous_mode: bool = False
    controller_config: Optional[ControllerConfig] = None


def merge_step_record(
    record: StepRecord | None, step_index: int, patch: dict[str, Any]
) -> StepRecord:
    """Return ``record`` with ``patch`` applied, creating it when missing."""

    base = record.model_dump() if record else {"step_index": step_index}
    base.update(patch)
    base["step_index"] = step_index
    return StepRecord.model_validate(base)


def merge_workflow_record(
    record: WorkflowRecord | None, patch: dict[str, Any]
) -> WorkflowRecord:
    base = record.model_dump() if record else {}
    base.update(patch)
    return WorkflowRecord.model_validate(base)
