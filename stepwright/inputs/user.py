"""Operator-driven input provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Union

from ..errors import CancellationError
from .base import Advance, InputContext, InputProvider, InputResult, ResumeWith, Skip, Stop

logger = logging.getLogger(__name__)


class _PlayQueued:
    """Inbox marker: send the chained prompt at the cursor."""


_PLAY_QUEUED = _PlayQueued()

InboxItem = Union[str, Skip, Stop, _PlayQueued]


class UserInputProvider(InputProvider):
    """Waits for the operator to submit text, skip or stop.

    Empty text finishes the step. ``play_queued`` sends the next chained
    prompt, or finishes the step when the chain is exhausted.
    """

    name = "user"

    def __init__(self) -> None:
        super().__init__()
        self._inbox: asyncio.Queue[InboxItem] = asyncio.Queue()

    # ------------------------------------------------------------------
    # Operator channel
    def submit(self, text: str) -> None:
        self._inbox.put_nowait(text)

    def play_queued(self) -> None:
        self._inbox.put_nowait(_PLAY_QUEUED)

    def skip(self) -> None:
        self._inbox.put_nowait(Skip())

    def stop(self) -> None:
        self._inbox.put_nowait(Stop())

    @property
    def pending(self) -> int:
        return self._inbox.qsize()

    # ------------------------------------------------------------------
    async def get_input(self, context: InputContext) -> InputResult:
        self._begin(context.token)
        logger.debug(f"Waiting for operator input on step {context.step_index}")
        try:
            item = await context.token.run(self._inbox.get())
        except CancellationError:
            return self._cancelled_result()
        finally:
            self._end()
        return self._interpret(item, context)

    @staticmethod
    def _interpret(item: InboxItem, context: InputContext) -> InputResult:
        if isinstance(item, (Skip, Stop)):
            return item
        if isinstance(item, _PlayQueued):
            if context.queued_prompt is not None:
                return ResumeWith(text=context.queued_prompt.content)
            return Advance()
        if item.strip() == "":
            return Advance()
        return ResumeWith(text=item)
