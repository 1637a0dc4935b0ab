"""Ephemeral worker pool: one container per request, cancellable by termination."""

from __future__ import annotations

import asyncio
import logging
import time

from switchboard.cancellation import CancelToken
from switchboard.errors import ProtocolParseError, RequestCancelled
from switchboard.models import Namespace
from switchboard.protocol import WorkerRequest, WorkerResponse, extract_framed_output

logger = logging.getLogger(__name__)


class EphemeralPool:
    """Spawns a fresh worker per request and tears it down afterwards.

    Cancellation is not complete until termination of the underlying process
    has been requested: a token firing mid-run terminates the process and the
    caller gets ``RequestCancelled`` instead of a result.
    """

    def __init__(self, runtime, *, timeout: float = 600.0, grace: float = 5.0):
        self.runtime = runtime
        self.timeout = timeout
        self.grace = grace
        self._active: dict[str, object] = {}

    @property
    def active_count(self) -> int:
        return len(self._active)

    def active_names(self) -> list[str]:
        return list(self._active)

    async def run(
        self,
        request: WorkerRequest,
        namespace: Namespace,
        cancel: CancelToken | None = None,
    ) -> WorkerResponse:
        if cancel and cancel.cancelled:
            raise RequestCancelled(request.request_id)

        spec = self.runtime.build_spec(namespace, privileged=request.privileged, persistent=False)
        proc = await self.runtime.spawn(spec)
        self._active[spec.name] = proc
        started = time.monotonic()
        lines: list[str] = []
        proc.on_line(lines.append)

        try:
            if cancel and cancel.cancelled:
                await self._kill(proc, spec.name)
                raise RequestCancelled(request.request_id)

            await proc.send_line(request.to_wire())
            await proc.close_stdin()

            exit_waiter = asyncio.ensure_future(proc.wait())
            waiters = {exit_waiter}
            cancel_waiter = None
            if cancel:
                cancel_waiter = asyncio.ensure_future(cancel.wait())
                waiters.add(cancel_waiter)
            try:
                done, _ = await asyncio.wait(waiters, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    if not waiter.done():
                        waiter.cancel()

            if exit_waiter not in done:
                await self._kill(proc, spec.name)
                if cancel and cancel.cancelled:
                    logger.info("Cancelled worker %s (%s)", spec.name, cancel.reason)
                    raise RequestCancelled(request.request_id)
                logger.error("Worker %s timed out after %.0fs", spec.name, self.timeout)
                return WorkerResponse(
                    request_id=request.request_id,
                    status="error",
                    error=f"worker timed out after {self.timeout:.0f}s",
                )

            if cancel and cancel.cancelled:
                raise RequestCancelled(request.request_id)

            duration = time.monotonic() - started
            code = exit_waiter.result()
            try:
                response = extract_framed_output("\n".join(lines))
            except ProtocolParseError as e:
                logger.error(
                    "Worker %s produced no parseable output (exit=%s, %.1fs): %s; stderr: %s",
                    spec.name, code, duration, e, proc.stderr_tail[-500:],
                )
                return WorkerResponse(
                    request_id=request.request_id,
                    status="error",
                    error=f"worker exited with code {code} without a result",
                )
            logger.info(
                "Worker %s finished in %.1fs (status=%s)", spec.name, duration, response.status
            )
            return WorkerResponse(
                request_id=request.request_id,
                status=response.status,
                result=response.result,
                new_session_id=response.new_session_id,
                error=response.error,
            )
        finally:
            self._active.pop(spec.name, None)
            if proc.returncode is None:
                await self._kill(proc, spec.name)

    async def _kill(self, proc, name: str) -> None:
        await proc.terminate(grace=self.grace)
        await self.runtime.stop_container(name)

    async def shutdown(self) -> None:
        """Terminate every worker still running."""
        procs = list(self._active.items())
        for name, proc in procs:
            try:
                await self._kill(proc, name)
            except Exception as e:
                logger.warning("Failed to terminate worker %s: %s", name, e)
