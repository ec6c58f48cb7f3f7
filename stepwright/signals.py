"""Operator and environment interrupts: pause, skip, stop and mode change."""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from .cancellation import CancellationToken
from .events import WorkflowEventEmitter, notify
from .indexing import StepIndexManager
from .mode import WorkflowMode
from .state import EventType, MachineEvent, MachineState, StepStateMachine

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    PAUSE = "pause"
    SKIP = "skip"
    STOP = "stop"
    MODE_CHANGE = "mode_change"


class StepContext(BaseModel):
    """The step currently being worked on, as seen by signal handlers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    step_index: int
    agent_id: str
    session_id: Optional[str] = None
    token: Optional[CancellationToken] = None


SignalCallback = Callable[[Any], Union[None, Awaitable[None]]]

_ACTIVE_STATES = (MachineState.RUNNING, MachineState.AWAITING, MachineState.DELEGATED)


class SignalManager:
    """Single registration point for the four workflow signals.

    Each signal kind has its own callback list; the built-in handler runs
    first, then any callbacks registered by the host. Deliveries are
    serialized, so two signals are never handled at the same time and the
    last mode change wins. Without a step context every signal is a no-op.
    """

    def __init__(
        self,
        machine: StepStateMachine,
        index: StepIndexManager,
        mode: WorkflowMode,
        emitter: Optional[WorkflowEventEmitter] = None,
    ) -> None:
        self._machine = machine
        self._index = index
        self._mode = mode
        self._emitter = emitter
        self._lock = asyncio.Lock()
        self._step_context: Optional[StepContext] = None
        self._callbacks: Dict[SignalKind, List[SignalCallback]] = {
            kind: [] for kind in SignalKind
        }
        self.register(SignalKind.PAUSE, self._handle_pause)
        self.register(SignalKind.SKIP, self._handle_skip)
        self.register(SignalKind.STOP, self._handle_stop)
        self.register(SignalKind.MODE_CHANGE, self._handle_mode_change)

    # ------------------------------------------------------------------
    # Step context
    @property
    def step_context(self) -> Optional[StepContext]:
        return self._step_context

    def set_step_context(self, context: Optional[StepContext]) -> None:
        self._step_context = context

    def set_token(self, token: Optional[CancellationToken]) -> None:
        """Point signal handlers at the token of the call now in flight."""
        if self._step_context is not None:
            self._step_context.token = token

    def set_session(self, session_id: Optional[str]) -> None:
        if self._step_context is not None:
            self._step_context.session_id = session_id

    # ------------------------------------------------------------------
    # Registry
    def register(self, kind: SignalKind, callback: SignalCallback) -> Callable[[], None]:
        self._callbacks[kind].append(callback)

        def unregister() -> None:
            if callback in self._callbacks[kind]:
                self._callbacks[kind].remove(callback)

        return unregister

    async def send(self, kind: SignalKind, payload: Any = None) -> bool:
        """Deliver ``kind`` to its callbacks. Returns False when ignored."""
        async with self._lock:
            if self._step_context is None:
                logger.debug(f"Ignoring {kind.value} signal: no active step")
                return False
            if self._machine.is_final:
                logger.debug(f"Ignoring {kind.value} signal: workflow already finished")
                return False
            logger.info(f"Signal {kind.value} for step {self._step_context.step_index}")
            for callback in list(self._callbacks[kind]):
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            return True

    async def pause(self) -> bool:
        return await self.send(SignalKind.PAUSE)

    async def skip(self) -> bool:
        return await self.send(SignalKind.SKIP)

    async def stop(self, reason: Optional[str] = None) -> bool:
        return await self.send(SignalKind.STOP, reason)

    async def change_mode(self, target: str) -> bool:
        if target not in ("manual", "auto"):
            raise ValueError(f"Unknown mode: {target}")
        return await self.send(SignalKind.MODE_CHANGE, target)

    # ------------------------------------------------------------------
    # Built-in handlers
    async def _handle_pause(self, payload: Any) -> None:
        context = self._step_context
        state = self._machine.state
        if state not in _ACTIVE_STATES or self._mode.paused:
            return
        provider = self._mode.active_provider
        if state is MachineState.DELEGATED or (provider is not self._mode.user and provider.busy):
            # a pending controller decision must not override the pause
            provider.abort(switch_to="manual")
        # the in-flight call is left to finish; pause applies at the next wait
        self._mode.pause()
        notify(
            self._emitter,
            "paused",
            step_index=context.step_index,
            session_id=context.session_id,
        )

    async def _handle_skip(self, payload: Any) -> None:
        context = self._step_context
        if self._machine.state not in _ACTIVE_STATES:
            return
        step_index = self._machine.current_step_index
        if context.token is not None:
            context.token.cancel("skip")
        self._index.reset()
        self._machine.send(MachineEvent.of(EventType.SKIP))
        notify(self._emitter, "step_skipped", step_index=step_index)
        await self._index.step_completed(step_index)

    async def _handle_stop(self, payload: Any) -> None:
        context = self._step_context
        if context.token is not None:
            context.token.cancel("stop")
        self._machine.send(MachineEvent.stop(payload or "stopped by operator"))
        notify(self._emitter, "status", status=self._machine.state.value)

    async def _handle_mode_change(self, payload: Any) -> None:
        auto = payload == "auto"
        if auto and not self._mode.has_controller:
            logger.warning("Ignoring switch to autonomous mode: no controller configured")
            return
        if auto == self._mode.auto_mode:
            return

        state = self._machine.state
        provider = self._mode.active_provider
        if state in (MachineState.AWAITING, MachineState.DELEGATED) and provider.busy:
            provider.abort(switch_to=payload)
        self._mode.set_auto_mode(auto)

        if state is MachineState.DELEGATED and not auto:
            self._machine.send(MachineEvent.of(EventType.AWAIT))
        elif state is MachineState.AWAITING and auto and self._index.is_exhausted():
            self._machine.send(MachineEvent.of(EventType.DELEGATE))
        await self._index.set_autonomous_mode(auto)
