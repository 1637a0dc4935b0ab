"""Periodic callback runner with explicit start/stop.

Every polling loop in the orchestrator (message loop, mailbox, scheduler,
health probes) runs on a Ticker so that shutdown has one cancellation point
per loop.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Ticker:
    """Runs ``callback`` every ``interval`` seconds until stopped.

    Errors raised by the callback are logged and the loop continues.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        name: str = "ticker",
        run_immediately: bool = True,
    ):
        self.interval = interval
        self.name = name
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking. Must be called from a running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    def cancel(self) -> None:
        """Request cancellation without waiting (safe from sync callbacks)."""
        if self._task:
            self._task.cancel()

    async def stop(self) -> None:
        task = self._task
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Ticker %s stopped", self.name)

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Ticker %s callback error: %s", self.name, e)
            self.ticks += 1
            await asyncio.sleep(self.interval)
