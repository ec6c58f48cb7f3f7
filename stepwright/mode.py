"""Manual/autonomous mode switch between input providers."""

from __future__ import annotations

import logging
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel

from .events import WorkflowEventEmitter, notify
from .inputs import ControllerInputProvider, InputProvider, UserInputProvider
from .state import EventType, MachineEvent, StepStateMachine

logger = logging.getLogger(__name__)


class ModeEvent(BaseModel):
    mode: Literal["manual", "auto"]
    paused: bool
    provider: str


ModeListener = Callable[[ModeEvent], None]


class WorkflowMode:
    """Selects the active input provider from the machine's mode flags.

    The user provider is active while paused or in manual mode. Swapping
    providers deactivates the old one and activates the new one. All flag
    changes are synchronous so a waiting caller that wakes up after a switch
    always sees the new provider.
    """

    def __init__(
        self,
        machine: StepStateMachine,
        user: UserInputProvider,
        controller: Optional[ControllerInputProvider] = None,
        emitter: Optional[WorkflowEventEmitter] = None,
    ) -> None:
        self._machine = machine
        self.user = user
        self.controller = controller
        self._emitter = emitter
        self._listeners: List[ModeListener] = []
        self._machine.set_has_controller(self.has_controller)
        self.active_provider.activate()

    @property
    def has_controller(self) -> bool:
        return self.controller is not None and self.controller.configured

    @property
    def auto_mode(self) -> bool:
        return self._machine.context.auto_mode

    @property
    def paused(self) -> bool:
        return self._machine.context.paused

    @property
    def active_provider(self) -> InputProvider:
        if self.paused or not self.auto_mode or not self.has_controller:
            return self.user
        return self.controller

    def subscribe(self, listener: ModeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    def enable_auto_mode(self) -> bool:
        """Switch to autonomous mode. Returns False when no controller exists."""
        if not self.has_controller:
            logger.warning("Cannot enable autonomous mode without a controller")
            return False
        previous = self.active_provider
        self._machine.set_auto_mode(True)
        if self.paused:
            self._machine.send(MachineEvent.of(EventType.RESUME))
        self._swap(previous)
        return True

    def disable_auto_mode(self) -> None:
        previous = self.active_provider
        self._machine.set_auto_mode(False)
        self._swap(previous)

    def set_auto_mode(self, enabled: bool) -> bool:
        if enabled:
            return self.enable_auto_mode()
        self.disable_auto_mode()
        return True

    def pause(self) -> None:
        previous = self.active_provider
        self._machine.send(MachineEvent.of(EventType.PAUSE))
        self._swap(previous)

    def resume(self) -> None:
        if not self.paused:
            return
        previous = self.active_provider
        self._machine.send(MachineEvent.of(EventType.RESUME))
        self._swap(previous)

    # ------------------------------------------------------------------
    def _swap(self, previous: InputProvider) -> None:
        current = self.active_provider
        if current is not previous:
            previous.deactivate()
            current.activate()
        event = ModeEvent(
            mode="auto" if self.auto_mode else "manual",
            paused=self.paused,
            provider=current.name,
        )
        logger.info(f"Mode is {event.mode} (paused={event.paused}, provider={event.provider})")
        notify(self._emitter, "mode_changed", mode=event.mode, paused=event.paused)
        for listener in list(self._listeners):
            listener(event)
