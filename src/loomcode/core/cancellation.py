"""
Cooperative cancellation for agent runs.

A :class:`CancellationToken` is created per run and passed to every suspendable call.  Loop code
checks it at turn and dispatch boundaries with :meth:`CancellationToken.raise_if_cancelled`;
network-bound awaits go through :meth:`CancellationToken.run`, which aborts the awaited task (and
with it the underlying HTTP request) as soon as the token fires.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import (
    Awaitable,
    Optional,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunCancelled(Exception):
    """Raised inside a run once its token has been cancelled."""


class CancellationToken:
    """One-shot cancellation flag that can also interrupt awaits."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation.  Safe to call from any thread, and more than once."""
        if self._cancelled:
            return
        self._cancelled = True
        loop = self._loop
        if loop is None or loop.is_closed():
            self._event.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._event.set()
        else:
            loop.call_soon_threadsafe(self._event.set)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RunCancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await *awaitable* unless the token fires first.

        Raises
        ------
        RunCancelled
            If the token was (or becomes) cancelled before the awaitable finished.  The awaitable's
            task is cancelled, which closes any in-flight request it was making.
        """
        self._loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)
        if self._cancelled:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise RunCancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        logger.debug("Cancellation requested; aborting in-flight call")
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise RunCancelled()
