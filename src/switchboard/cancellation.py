"""Cancellation tokens shared by the router, pool, and lifecycle manager."""

from __future__ import annotations

import asyncio

SHUTDOWN = "shutdown"


class CancelToken:
    """One-shot cancellation signal.

    Waiters race ``wait()`` against their own work; the first reason given
    to ``cancel()`` sticks.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
