"""Step state machine driving a workflow from step to step."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class MachineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING = "awaiting"
    DELEGATED = "delegated"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


FINAL_STATES = frozenset({MachineState.COMPLETED, MachineState.STOPPED, MachineState.ERROR})


class EventType(str, Enum):
    START = "START"
    STEP_COMPLETE = "STEP_COMPLETE"
    STEP_ERROR = "STEP_ERROR"
    INPUT_RECEIVED = "INPUT_RECEIVED"
    RESUME = "RESUME"
    SKIP = "SKIP"
    PAUSE = "PAUSE"
    STOP = "STOP"
    DELEGATE = "DELEGATE"
    AWAIT = "AWAIT"
    LOOP = "LOOP"


class MachineEvent(BaseModel):
    """An event sent to the state machine."""

    type: EventType
    output: Optional[str] = None
    log_handle_id: Optional[str] = None
    input: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    target_index: Optional[int] = None

    @classmethod
    def start(cls) -> "MachineEvent":
        return cls(type=EventType.START)

    @classmethod
    def step_complete(
        cls, output: str, log_handle_id: Optional[str] = None
    ) -> "MachineEvent":
        return cls(type=EventType.STEP_COMPLETE, output=output, log_handle_id=log_handle_id)

    @classmethod
    def step_error(cls, error: str) -> "MachineEvent":
        return cls(type=EventType.STEP_ERROR, error=error)

    @classmethod
    def input_received(cls, text: str) -> "MachineEvent":
        return cls(type=EventType.INPUT_RECEIVED, input=text)

    @classmethod
    def loop(cls, target_index: int, reason: Optional[str] = None) -> "MachineEvent":
        return cls(type=EventType.LOOP, target_index=target_index, reason=reason)

    @classmethod
    def stop(cls, reason: Optional[str] = None) -> "MachineEvent":
        return cls(type=EventType.STOP, reason=reason)

    @classmethod
    def of(cls, event_type: EventType) -> "MachineEvent":
        return cls(type=event_type)


class MachineContext(BaseModel):
    """Working memory of the state machine."""

    current_step_index: int = 0
    total_steps: int = 0
    paused: bool = False
    auto_mode: bool = False
    has_controller: bool = False
    current_output: Optional[str] = None
    current_log_handle_id: Optional[str] = None
    last_error: Optional[str] = None
    stop_reason: Optional[str] = None


class QueueView(Protocol):
    """Read-only view of the current step's chained prompt queue."""

    def is_exhausted(self) -> bool:
        ...


StateListener = Callable[[MachineState, MachineState, MachineEvent], None]

_ACTIVE = (MachineState.RUNNING, MachineState.AWAITING, MachineState.DELEGATED)


class StepStateMachine:
    """Finite state machine for workflow execution.

    Only the machine mutates its context. Other components read it through
    ``context`` and request changes with ``send`` or the accessor methods.
    Events arriving in a final state, or without a matching transition, are
    ignored.
    """

    def __init__(
        self,
        total_steps: int,
        *,
        queue: Optional[QueueView] = None,
        start_index: int = 0,
        auto_mode: bool = False,
        has_controller: bool = False,
    ) -> None:
        self._state = MachineState.IDLE
        self._context = MachineContext(
            current_step_index=start_index,
            total_steps=total_steps,
            auto_mode=auto_mode,
            has_controller=has_controller,
        )
        self._queue = queue
        self._listeners: List[StateListener] = []
        self._transitions: Dict[
            Tuple[MachineState, EventType], Callable[[MachineEvent], MachineState]
        ] = {(MachineState.IDLE, EventType.START): self._on_start}
        for state in _ACTIVE:
            self._transitions[(state, EventType.STOP)] = self._on_stop
            self._transitions[(state, EventType.PAUSE)] = self._on_pause
            self._transitions[(state, EventType.RESUME)] = self._on_resume
            self._transitions[(state, EventType.SKIP)] = self._next_step
            self._transitions[(state, EventType.LOOP)] = self._on_loop
        self._transitions[(MachineState.IDLE, EventType.STOP)] = self._on_stop
        self._transitions[(MachineState.RUNNING, EventType.STEP_COMPLETE)] = self._on_step_complete
        self._transitions[(MachineState.RUNNING, EventType.STEP_ERROR)] = self._on_step_error
        self._transitions[(MachineState.AWAITING, EventType.INPUT_RECEIVED)] = self._on_input
        self._transitions[(MachineState.DELEGATED, EventType.INPUT_RECEIVED)] = self._on_input
        self._transitions[(MachineState.AWAITING, EventType.DELEGATE)] = self._to(MachineState.DELEGATED)
        self._transitions[(MachineState.RUNNING, EventType.DELEGATE)] = self._to(MachineState.DELEGATED)
        self._transitions[(MachineState.DELEGATED, EventType.AWAIT)] = self._to(MachineState.AWAITING)
        self._transitions[(MachineState.RUNNING, EventType.AWAIT)] = self._to(MachineState.AWAITING)

    # ------------------------------------------------------------------
    # Accessors
    @property
    def state(self) -> MachineState:
        return self._state

    @property
    def context(self) -> MachineContext:
        return self._context

    @property
    def is_final(self) -> bool:
        return self._state in FINAL_STATES

    @property
    def current_step_index(self) -> int:
        return self._context.current_step_index

    def set_start_index(self, index: int) -> None:
        """Position the machine before START, e.g. when resuming."""
        if self._state is not MachineState.IDLE:
            raise RuntimeError("Start index can only be set before the workflow starts")
        self._context.current_step_index = index

    def set_auto_mode(self, enabled: bool) -> None:
        self._context.auto_mode = enabled

    def set_has_controller(self, present: bool) -> None:
        self._context.has_controller = present

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    def send(self, event: MachineEvent) -> MachineState:
        """Apply ``event`` and return the resulting state."""
        if self.is_final:
            logger.debug(f"Ignoring {event.type.value} in final state {self._state.value}")
            return self._state

        handler = self._transitions.get((self._state, event.type))
        if handler is None:
            logger.debug(f"No transition for {event.type.value} in state {self._state.value}")
            return self._state

        previous = self._state
        self._state = handler(event)
        logger.debug(
            f"Transition {previous.value} -> {self._state.value} "
            f"(event {event.type.value}, step {self._context.current_step_index})"
        )
        for listener in list(self._listeners):
            listener(previous, self._state, event)
        return self._state

    # ------------------------------------------------------------------
    # Transition actions
    def _to(self, target: MachineState) -> Callable[[MachineEvent], MachineState]:
        return lambda event: target

    def _queue_exhausted(self) -> bool:
        return self._queue is None or self._queue.is_exhausted()

    def _on_start(self, event: MachineEvent) -> MachineState:
        ctx = self._context
        if ctx.current_step_index >= ctx.total_steps:
            logger.info("No steps left to run")
            return MachineState.COMPLETED
        logger.info(f"Workflow started at step {ctx.current_step_index + 1}/{ctx.total_steps}")
        return MachineState.RUNNING

    def _on_step_complete(self, event: MachineEvent) -> MachineState:
        ctx = self._context
        ctx.current_output = event.output
        if event.log_handle_id:
            ctx.current_log_handle_id = event.log_handle_id
        if not self._queue_exhausted() or ctx.paused:
            return MachineState.AWAITING
        if ctx.auto_mode and ctx.has_controller:
            return MachineState.DELEGATED
        return MachineState.AWAITING

    def _on_step_error(self, event: MachineEvent) -> MachineState:
        self._context.last_error = event.error
        return MachineState.ERROR

    def _on_input(self, event: MachineEvent) -> MachineState:
        if not event.input and self._queue_exhausted():
            return self._next_step(event)
        # continuation of the same step
        return MachineState.RUNNING

    def _next_step(self, event: MachineEvent) -> MachineState:
        ctx = self._context
        if ctx.current_step_index >= ctx.total_steps - 1:
            return MachineState.COMPLETED
        ctx.current_step_index += 1
        ctx.current_output = None
        return MachineState.RUNNING

    def _on_loop(self, event: MachineEvent) -> MachineState:
        ctx = self._context
        target = event.target_index if event.target_index is not None else ctx.current_step_index
        ctx.current_step_index = min(max(target, 0), ctx.total_steps - 1)
        ctx.current_output = None
        return MachineState.RUNNING

    def _on_pause(self, event: MachineEvent) -> MachineState:
        self._context.paused = True
        self._context.auto_mode = False
        if self._state is MachineState.DELEGATED:
            return MachineState.AWAITING
        return self._state

    def _on_resume(self, event: MachineEvent) -> MachineState:
        self._context.paused = False
        return self._state

    def _on_stop(self, event: MachineEvent) -> MachineState:
        self._context.stop_reason = event.reason
        return MachineState.STOPPED
