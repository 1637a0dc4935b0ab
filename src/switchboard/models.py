"""Shared data types: inbound events, namespaces, scheduled tasks."""

from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

SCHEDULE_TYPES = ("cron", "interval", "once")
CONTEXT_MODES = ("isolated", "shared")
TASK_STATUSES = ("active", "paused", "completed")

# Message provenance values stored alongside history.
PROVENANCE_USER = "user"
PROVENANCE_ASSISTANT = "assistant"
PROVENANCE_SUBAGENT = "subagent"

FOLDER_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def to_iso(dt: datetime) -> str:
    """Normalize to a UTC ISO-8601 string that sorts lexicographically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return to_iso(utc_now())


def new_request_id(prefix: str = "req") -> str:
    """Globally unique id: millisecond timestamp plus a random suffix."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def is_valid_folder(folder: str) -> bool:
    return bool(FOLDER_RE.match(folder or "")) and folder not in ("errors", "global")


@dataclass
class InboundEvent:
    """A chat message as seen by the router."""

    id: str
    conversation_key: str
    sender: str
    content: str
    timestamp: str
    sender_name: str = ""
    message_type: str = "text"
    attachments: list[dict] = field(default_factory=list)
    quoted: dict | None = None
    provenance: str = PROVENANCE_USER


@dataclass
class Namespace:
    """A registered conversation owner with its own folder and mailbox."""

    conversation_key: str
    name: str
    folder: str
    trigger: str
    added_at: str = field(default_factory=utc_now_iso)


@dataclass
class ScheduledTask:
    """Recurring or one-shot prompt owned by a namespace."""

    id: str
    owner_namespace: str
    conversation_key: str
    prompt: str
    schedule_type: str  # cron, interval, once
    schedule_value: str
    context_mode: str = "isolated"  # isolated, shared
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: str = "active"  # active, paused, completed
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class TaskRunLog:
    """One execution of a scheduled task."""

    task_id: str
    started_at: str
    duration_ms: int
    status: str  # success, error
    result: str | None = None
    error: str | None = None
