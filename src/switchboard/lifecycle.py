"""Persistent worker lifecycle: one long-running container for the privileged namespace.

State machine:

    STOPPED -> STARTING -> RUNNING <-> RESTARTING -> RUNNING | FATAL
    RUNNING -> SHUTTING_DOWN -> STOPPED

Many logical queries are multiplexed over the worker's stdin/stdout and
matched back by ``requestId``. Liveness comes from process-exit events; the
periodic health probe is informational and a missing pong is never fatal.
After ``max_restart_attempts`` consecutive crashes the manager enters FATAL
and stays there for the lifetime of the orchestrator: the privileged namespace
is then served only by ephemeral workers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from switchboard.cancellation import CancelToken
from switchboard.errors import (
    ProtocolParseError,
    RequestCancelled,
    RequestTimeout,
    WorkerCrash,
    WorkerError,
    WorkerUnavailable,
)
from switchboard.models import Namespace, new_request_id
from switchboard.protocol import WorkerRequest, WorkerResponse, parse_response_line
from switchboard.ticker import Ticker

logger = logging.getLogger(__name__)

HEALTH_PREFIX = "health-"


class WorkerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    SHUTTING_DOWN = "shutting_down"
    FATAL = "fatal"


@dataclass
class PendingCorrelation:
    future: asyncio.Future
    deadline: asyncio.TimerHandle
    started_at: float


class PersistentWorkerManager:
    """Owns exactly one long-running worker and its correlation table."""

    def __init__(
        self,
        namespace: Namespace,
        runtime,
        *,
        request_timeout: float = 300.0,
        health_interval: float = 30.0,
        max_restart_attempts: int = 3,
        backoff_base: float = 1.0,
        shutdown_grace: float = 1.0,
    ):
        self.namespace = namespace
        self.runtime = runtime
        self.request_timeout = request_timeout
        self.health_interval = health_interval
        self.max_restart_attempts = max_restart_attempts
        self.backoff_base = backoff_base
        self.shutdown_grace = shutdown_grace

        self._state = WorkerState.STOPPED
        self._process = None
        self._pending: dict[str, PendingCorrelation] = {}
        self._restart_attempts = 0
        self._restart_task: asyncio.Task | None = None
        self._health_ticker: Ticker | None = None
        self._fatal_callbacks: list[Callable[[], None]] = []
        self.last_health_at: float | None = None

    # --- Introspection ---

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state == WorkerState.RUNNING and self._process is not None

    @property
    def fallback_only(self) -> bool:
        return self._state == WorkerState.FATAL

    @property
    def restart_attempts(self) -> int:
        return self._restart_attempts

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def on_fatal(self, callback: Callable[[], None]) -> None:
        self._fatal_callbacks.append(callback)

    def backoff_delay(self, attempts: int) -> float:
        return self.backoff_base * (2 ** attempts)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the worker; an external start resets the restart budget."""
        if self._state == WorkerState.FATAL:
            logger.warning("Persistent worker is in permanent fallback; not starting")
            return
        if self._state == WorkerState.SHUTTING_DOWN:
            raise WorkerUnavailable("persistent worker is shutting down")
        if self._process is not None:
            logger.warning("Persistent worker already running")
            return
        self._restart_attempts = 0
        await self._spawn()

    async def _spawn(self) -> None:
        self._state = WorkerState.STARTING
        logger.info("Starting persistent worker for namespace %s", self.namespace.folder)
        spec = self.runtime.build_spec(self.namespace, privileged=True, persistent=True)
        try:
            process = await self.runtime.spawn(spec)
        except Exception:
            self._state = WorkerState.STOPPED
            raise
        process.on_line(self._handle_line)
        process.on_exit(lambda code, p=process: self._handle_exit(p, code))
        self._process = process
        self._state = WorkerState.RUNNING

        if self._health_ticker:
            self._health_ticker.cancel()
        self._health_ticker = Ticker(
            self.health_interval,
            self._send_health,
            name="persistent-health",
            run_immediately=False,
        )
        self._health_ticker.start()
        logger.info("Persistent worker started (%s)", spec.name)

    async def shutdown(self) -> None:
        """Stop the worker deliberately. Safe to call more than once."""
        if self._state in (WorkerState.SHUTTING_DOWN, WorkerState.STOPPED) and self._process is None:
            return
        previous = self._state
        self._state = WorkerState.SHUTTING_DOWN
        logger.info("Shutting down persistent worker")

        if self._health_ticker:
            await self._health_ticker.stop()
            self._health_ticker = None
        if self._restart_task and not self._restart_task.done():
            self._restart_task.cancel()
        self._restart_task = None

        self._reject_all(WorkerUnavailable("persistent worker shutting down"))

        process = self._process
        if process is not None:
            try:
                await process.send_line({"requestId": "shutdown", "command": "shutdown"})
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace)
            except (asyncio.TimeoutError, WorkerUnavailable, OSError):
                pass
            await process.terminate()
            self._process = None

        # FATAL is permanent even across a deliberate shutdown.
        self._state = WorkerState.FATAL if previous == WorkerState.FATAL else WorkerState.STOPPED
        logger.info("Persistent worker shut down")

    # --- Queries ---

    async def query(
        self,
        prompt: str,
        session_id: str | None,
        conversation_key: str,
        *,
        is_scheduled: bool = False,
        cancel: CancelToken | None = None,
    ) -> WorkerResponse:
        """Send one prompt and wait for the matching response.

        Raises WorkerUnavailable, RequestTimeout, WorkerCrash, WorkerError,
        or RequestCancelled. A timeout leaves the worker running.
        """
        if not self.is_available:
            raise WorkerUnavailable(f"persistent worker not available (state={self._state.value})")

        request = WorkerRequest(
            request_id=new_request_id(),
            command="query",
            prompt=prompt,
            session_id=session_id,
            namespace=self.namespace.folder,
            conversation_key=conversation_key,
            privileged=True,
            is_scheduled=is_scheduled,
        )
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        deadline = loop.call_later(self.request_timeout, self._expire, request.request_id)
        self._pending[request.request_id] = PendingCorrelation(future, deadline, time.monotonic())

        try:
            await self._process.send_line(request.to_wire())
        except Exception as e:
            self._discard(request.request_id)
            raise WorkerUnavailable(f"failed to send request: {e}") from e
        logger.info("Query %s sent to persistent worker", request.request_id)

        if cancel is None:
            return await future

        cancel_waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({future, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        if future.done():
            return future.result()
        # The worker keeps running the query; only delivery is suppressed.
        self._discard(request.request_id)
        logger.info("Query %s cancelled (%s); late response will be dropped", request.request_id, cancel.reason)
        raise RequestCancelled(request.request_id)

    def _discard(self, request_id: str) -> PendingCorrelation | None:
        pending = self._pending.pop(request_id, None)
        if pending:
            pending.deadline.cancel()
            if not pending.future.done():
                pending.future.cancel()
        return pending

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning("Query %s timed out after %.0fs", request_id, self.request_timeout)
        if not pending.future.done():
            pending.future.set_exception(RequestTimeout(request_id))

    def _reject_all(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for request_id, entry in pending.items():
            entry.deadline.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)
        if pending:
            logger.warning("Rejected %d pending queries: %s", len(pending), error)

    def _handle_line(self, line: str) -> None:
        try:
            response = parse_response_line(line)
        except ProtocolParseError as e:
            logger.warning("Unparseable line from persistent worker: %s (%s)", line[:200], e)
            return

        if response.request_id.startswith(HEALTH_PREFIX):
            self.last_health_at = time.monotonic()
            return

        pending = self._pending.pop(response.request_id, None)
        if pending is None:
            logger.warning("Response for unknown request %s dropped", response.request_id)
            return
        pending.deadline.cancel()
        if pending.future.done():
            return

        elapsed = time.monotonic() - pending.started_at
        logger.info(
            "Response for %s after %.1fs (status=%s)", response.request_id, elapsed, response.status
        )
        if response.ok:
            pending.future.set_result(response)
        else:
            pending.future.set_exception(WorkerError(response.error or "unknown worker error"))

    async def _send_health(self) -> None:
        process = self._process
        if process is None or self._state != WorkerState.RUNNING:
            return
        try:
            await process.send_line({"requestId": new_request_id("health"), "command": "health"})
        except Exception as e:
            logger.warning("Health probe write failed: %s", e)

    # --- Crash handling ---

    def _handle_exit(self, process, code: int | None) -> None:
        if process is not self._process:
            return
        logger.warning(
            "Persistent worker exited (code=%s, restart_attempts=%d)", code, self._restart_attempts
        )
        self._reject_all(WorkerCrash(f"persistent worker exited with code {code}"))
        self._process = None
        if self._health_ticker:
            self._health_ticker.cancel()
            self._health_ticker = None

        if self._state == WorkerState.SHUTTING_DOWN:
            return
        self._schedule_restart_or_fail()

    def _schedule_restart_or_fail(self) -> None:
        if self._restart_attempts < self.max_restart_attempts:
            delay = self.backoff_delay(self._restart_attempts)
            self._restart_attempts += 1
            self._state = WorkerState.RESTARTING
            logger.info(
                "Restarting persistent worker in %.1fs (attempt %d/%d)",
                delay, self._restart_attempts, self.max_restart_attempts,
            )
            self._restart_task = asyncio.create_task(self._restart_after(delay))
        else:
            self._enter_fatal()

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._state != WorkerState.RESTARTING:
            return
        try:
            await self._spawn()
        except Exception as e:
            logger.error("Failed to restart persistent worker: %s", e)
            self._schedule_restart_or_fail()

    def _enter_fatal(self) -> None:
        self._state = WorkerState.FATAL
        logger.error(
            "Persistent worker exceeded %d restart attempts; falling back to ephemeral workers",
            self.max_restart_attempts,
        )
        for callback in list(self._fatal_callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning("Fatal callback error: %s", e)
