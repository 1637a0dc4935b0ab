"""Scheduled tasks: validation, next-run computation, and the due-task poller.

Schedule types:

- ``cron``: five-field cron expression evaluated in the configured timezone.
- ``interval``: milliseconds between runs, counted from the end of the last run.
- ``once``: an ISO-8601 timestamp; naive timestamps are read in the configured
  timezone. The task completes after its single run.

Malformed schedules raise ``SchedulingSpecError`` at creation time so they
never reach the store.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from switchboard.errors import SchedulingSpecError
from switchboard.models import SCHEDULE_TYPES, ScheduledTask, TaskRunLog, to_iso, utc_now
from switchboard.ticker import Ticker

logger = logging.getLogger(__name__)

RESULT_SUMMARY_CHARS = 200


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingSpecError(f"Unknown timezone: {name}") from e


def _parse_interval_ms(value: str) -> int:
    try:
        ms = int(str(value).strip())
    except ValueError as e:
        raise SchedulingSpecError(f"Invalid interval: {value!r}") from e
    if ms <= 0:
        raise SchedulingSpecError(f"Interval must be positive: {value!r}")
    return ms


def _parse_once(value: str, tz: ZoneInfo) -> datetime:
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        when = datetime.fromisoformat(raw)
    except ValueError as e:
        raise SchedulingSpecError(f"Invalid timestamp: {value!r}") from e
    if when.tzinfo is None:
        when = when.replace(tzinfo=tz)
    return when


def validate_schedule(schedule_type: str, schedule_value: str, timezone: str = "UTC") -> None:
    if schedule_type not in SCHEDULE_TYPES:
        raise SchedulingSpecError(f"Unknown schedule type: {schedule_type!r}")
    tz = resolve_timezone(timezone)
    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise SchedulingSpecError(f"Invalid cron expression: {schedule_value!r}")
    elif schedule_type == "interval":
        _parse_interval_ms(schedule_value)
    else:
        _parse_once(schedule_value, tz)


def next_cron_run(expression: str, after: datetime, timezone: str = "UTC") -> datetime:
    """Next occurrence of ``expression`` strictly after ``after``, in ``timezone``."""
    tz = resolve_timezone(timezone)
    try:
        return croniter(expression, after.astimezone(tz)).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise SchedulingSpecError(f"Invalid cron expression: {expression!r}") from e


def compute_initial_run(
    schedule_type: str, schedule_value: str, timezone: str = "UTC", now: datetime | None = None
) -> str:
    """Validate a new schedule and return its first ``next_run``."""
    validate_schedule(schedule_type, schedule_value, timezone)
    now = now or utc_now()
    if schedule_type == "cron":
        return to_iso(next_cron_run(schedule_value, now, timezone))
    if schedule_type == "interval":
        return to_iso(now + timedelta(milliseconds=_parse_interval_ms(schedule_value)))
    return to_iso(_parse_once(schedule_value, resolve_timezone(timezone)))


def compute_next_run(task: ScheduledTask, timezone: str = "UTC", now: datetime | None = None) -> str | None:
    """``next_run`` after a run has finished; None for one-shot tasks."""
    now = now or utc_now()
    if task.schedule_type == "cron":
        return to_iso(next_cron_run(task.schedule_value, now, timezone))
    if task.schedule_type == "interval":
        return to_iso(now + timedelta(milliseconds=_parse_interval_ms(task.schedule_value)))
    return None


def new_task(
    owner_namespace: str,
    conversation_key: str,
    prompt: str,
    schedule_type: str,
    schedule_value: str,
    context_mode: str = "isolated",
    timezone: str = "UTC",
) -> ScheduledTask:
    next_run = compute_initial_run(schedule_type, schedule_value, timezone)
    return ScheduledTask(
        id=f"task-{int(time.time() * 1000)}-{secrets.token_hex(3)}",
        owner_namespace=owner_namespace,
        conversation_key=conversation_key,
        prompt=prompt,
        schedule_type=schedule_type,
        schedule_value=schedule_value,
        context_mode=context_mode,
        next_run=next_run,
    )


class Scheduler:
    """Polls the store for due tasks and runs them one at a time."""

    def __init__(
        self,
        store,
        runner: Callable[[ScheduledTask], Awaitable],
        *,
        poll_interval: float = 60.0,
        timezone: str = "UTC",
    ):
        self.store = store
        self.runner = runner
        self.timezone = timezone
        self._ticker = Ticker(poll_interval, self.run_due, name="scheduler")

    @property
    def running(self) -> bool:
        return self._ticker.running

    def start(self) -> None:
        self._ticker.start()
        logger.info("Scheduler started (poll every %.0fs, tz=%s)", self._ticker.interval, self.timezone)

    async def stop(self) -> None:
        await self._ticker.stop()

    async def run_due(self, now: datetime | None = None) -> int:
        """Run every active task whose ``next_run`` has passed. Returns runs attempted."""
        due = self.store.get_due_tasks(to_iso(now or utc_now()))
        if due:
            logger.info("Found %d due tasks", len(due))
        ran = 0
        for candidate in due:
            # Re-read: the task may have been paused or cancelled since the query.
            task = self.store.get_task(candidate.id)
            if task is None or task.status != "active":
                continue
            await self.run_task(task)
            ran += 1
        return ran

    async def run_task(self, task: ScheduledTask) -> None:
        started_at = utc_now()
        started = time.monotonic()
        logger.info("Running scheduled task %s for %s", task.id, task.owner_namespace)

        result: str | None = None
        error: str | None = None
        try:
            response = await self.runner(task)
            if response.ok:
                result = response.result
            else:
                error = response.error or "unknown error"
        except Exception as e:
            logger.exception("Scheduled task %s failed: %s", task.id, e)
            error = str(e) or type(e).__name__

        duration_ms = int((time.monotonic() - started) * 1000)
        self.store.log_task_run(TaskRunLog(
            task_id=task.id,
            started_at=to_iso(started_at),
            duration_ms=duration_ms,
            status="error" if error else "success",
            result=result,
            error=error,
        ))

        try:
            next_run = compute_next_run(task, self.timezone)
        except Exception as e:
            logger.error("Could not compute next run for task %s: %s", task.id, e)
            next_run = None
        summary = f"Error: {error}" if error else (result or "Completed")[:RESULT_SUMMARY_CHARS]
        self.store.update_task_after_run(task.id, next_run, summary)
        logger.info(
            "Task %s finished in %dms (%s); next run %s",
            task.id, duration_ms, "error" if error else "success", next_run or "none",
        )
