"""Base input provider interface and tagged input results."""

from __future__ import annotations

import abc
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from ..cancellation import CancellationToken
from ..contracts import QueuedPrompt


class Advance(BaseModel):
    """Finish the current step and move on."""

    model_config = ConfigDict(frozen=True)
    kind: Literal["advance"] = "advance"


class Skip(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["skip"] = "skip"


class Stop(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["stop"] = "stop"


class ResumeWith(BaseModel):
    """Continue the current step's session with ``text``."""

    model_config = ConfigDict(frozen=True)
    kind: Literal["resume"] = "resume"
    text: str


class SwitchMode(BaseModel):
    """The wait was interrupted by a mode change; redispatch with the new provider."""

    model_config = ConfigDict(frozen=True)
    kind: Literal["switch_mode"] = "switch_mode"
    target: Literal["manual", "auto"]


InputResult = Union[Advance, Skip, Stop, ResumeWith, SwitchMode]


class InputContext(BaseModel):
    """What a provider knows about the step waiting for input."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    step_index: int
    agent_id: str
    output: Optional[str] = None
    queued_prompt: Optional[QueuedPrompt] = None
    queue_exhausted: bool = True
    token: CancellationToken


class InputProvider(metaclass=abc.ABCMeta):
    """Produces the next input for a waiting step."""

    name: str = "provider"

    def __init__(self) -> None:
        self._token: Optional[CancellationToken] = None
        self._switch_target: Optional[str] = None
        self.active = False

    def activate(self) -> None:
        """Called when the provider becomes the active input source."""
        self.active = True

    def deactivate(self) -> None:
        """Called when another provider takes over."""
        self.active = False

    def abort(self, switch_to: Optional[str] = None) -> None:
        """Cancel the in-flight ``get_input`` call, if any.

        With ``switch_to`` set, the pending call returns ``SwitchMode``
        instead of ``Stop``.
        """
        if self._token is None:
            return
        if switch_to is not None:
            self._switch_target = switch_to
        self._token.cancel("mode_change" if switch_to else "abort")

    @property
    def busy(self) -> bool:
        return self._token is not None

    def _begin(self, token: CancellationToken) -> None:
        self._token = token
        self._switch_target = None

    def _end(self) -> None:
        self._token = None

    def _cancelled_result(self) -> InputResult:
        target = self._switch_target
        self._switch_target = None
        if target in ("manual", "auto"):
            return SwitchMode(target=target)
        return Stop()

    @abc.abstractmethod
    async def get_input(self, context: InputContext) -> InputResult:
        """Return the next input decision for the waiting step."""
        raise NotImplementedError
