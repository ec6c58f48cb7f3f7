"""Directive and loop tracking models."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DirectiveAction(str, Enum):
    ADVANCE = "advance"
    LOOP = "loop"
    STOP = "stop"
    ERROR = "error"
    CHECKPOINT = "checkpoint"
    PAUSE = "pause"
    TRIGGER = "trigger"


class DirectiveArtifact(BaseModel):
    """Raw decision written by an agent or by out-of-band tooling."""

    model_config = ConfigDict(extra="ignore")

    action: str = "continue"
    reason: Optional[str] = None
    target_agent_id: Optional[str] = None
    target_index: Optional[int] = Field(default=None, ge=0)
    max_iterations: Optional[int] = Field(default=None, ge=1)
    skip: Optional[List[str]] = None


class Directive(BaseModel):
    """The single action chosen after a step finished."""

    model_config = ConfigDict(frozen=True)

    action: DirectiveAction = DirectiveAction.ADVANCE
    reason: Optional[str] = None
    target_index: Optional[int] = None
    target_agent_id: Optional[str] = None

    @property
    def is_advance(self) -> bool:
        return self.action is DirectiveAction.ADVANCE


class ActiveLoop(BaseModel):
    """A rewind in progress, started by a loop directive."""

    source_step_index: int
    back_steps: int
    iteration: int = 1
    max_iterations: Optional[int] = None
    skip_list: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
