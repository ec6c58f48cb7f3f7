"""Cooperative cancellation tokens scoped to a single awaited call."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import CancellationError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation flag shared between a caller and a signal handler.

    A fresh token is created for every suspension point (executor call,
    provider wait) and discarded afterwards.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "cancelled")

    async def wait(self) -> str:
        """Block until cancelled and return the reason."""
        await self._event.wait()
        return self.reason or "cancelled"

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        Whichever finishes first wins. When cancellation wins the pending
        call is cancelled, its result is discarded and ``CancellationError``
        is raised.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        # the loser's outcome is collected so it is never reported as unretrieved
        await asyncio.gather(task, return_exceptions=True)
        raise CancellationError(self.reason or "cancelled")
