"""Cancellation handle propagated from the process down to each session."""

from __future__ import annotations

import asyncio
from typing import Awaitable, List, Optional, TypeVar

from .errors import Cancelled

T = TypeVar("T")


class CancellationToken:
    """A one-shot signal that interrupts timed waits.

    Cancelling a token also cancels every child created from it, so a single
    process-wide token reaches all sessions while a session can be stopped on
    its own.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = asyncio.Event()
        self._children: List[CancellationToken] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        for child in self._children:
            child.cancel()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first, in which case it is cancelled."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (work, stop):
                if not task.done():
                    task.cancel()
        if work.done() and not work.cancelled():
            return work.result()
        raise Cancelled("operation cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising Cancelled as soon as the token fires."""
        self.raise_if_cancelled()
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Cancelled("operation cancelled")
