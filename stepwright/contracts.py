"""Step definitions and collaborator contracts for stepwright workflows."""

from __future__ import annotations

from typing import List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

from .cancellation import CancellationToken


class QueuedPrompt(BaseModel):
    """One chained follow-up prompt fed to the same agent session."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str = ""
    content: str


class LoopBehavior(BaseModel):
    """Rewind policy attached to a step that may emit loop directives."""

    model_config = ConfigDict(frozen=True)

    type: Literal["loop"] = "loop"
    action: Literal["stepBack"] = "stepBack"
    steps: int = Field(default=1, ge=0)
    max_iterations: Optional[int] = Field(default=None, ge=1)
    skip: List[str] = Field(default_factory=list)


class CheckpointBehavior(BaseModel):
    """Marks a step whose output always requires human review."""

    model_config = ConfigDict(frozen=True)

    type: Literal["checkpoint"] = "checkpoint"


class StepDefinition(BaseModel):
    """Immutable description of one workflow step."""

    model_config = ConfigDict(frozen=True)

    index: int
    agent_id: str
    agent_name: str = ""
    prompt: str = ""
    engine: Optional[str] = None
    model: Optional[str] = None
    interactive: Optional[bool] = None
    execute_once: bool = False
    chained_prompts: List[QueuedPrompt] = Field(default_factory=list)
    behavior: Optional[Union[LoopBehavior, CheckpointBehavior]] = Field(
        default=None, discriminator="type"
    )

    @property
    def display_name(self) -> str:
        return self.agent_name or self.agent_id

    @property
    def loop_behavior(self) -> Optional[LoopBehavior]:
        return self.behavior if isinstance(self.behavior, LoopBehavior) else None


class ExecutionResult(BaseModel):
    """Outcome of one agent executor call."""

    output: str = ""
    session_id: Optional[str] = None
    log_handle_id: Optional[str] = None
    chained_prompts: List[QueuedPrompt] = Field(default_factory=list)


class ControllerReply(BaseModel):
    """Reply produced by the controller agent in autonomous mode."""

    output: str = ""
    session_id: Optional[str] = None
    log_handle_id: Optional[str] = None


class AgentExecutor(Protocol):
    """Runs one agent invocation for a step.

    Implementations must observe ``token`` and return promptly once it is
    cancelled. Passing a previously returned ``session_id`` continues that
    session instead of starting a new one.
    """

    async def execute(
        self,
        step: StepDefinition,
        prompt: str,
        token: CancellationToken,
        *,
        session_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Execute ``prompt`` for ``step``."""


class ControllerAgent(Protocol):
    """Persistent agent session that reviews step output in autonomous mode."""

    async def run(
        self,
        prompt: str,
        token: CancellationToken,
        *,
        session_id: Optional[str] = None,
    ) -> ControllerReply:
        """Ask the controller for the next action."""
