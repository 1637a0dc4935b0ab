"""Prompt rendering for batches, subagent context, and scheduled runs."""

from __future__ import annotations

from datetime import timedelta

from switchboard.models import PROVENANCE_SUBAGENT, InboundEvent, to_iso, utc_now


def escape_xml(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def _render_one(event: InboundEvent) -> str:
    sender = escape_xml(event.sender_name or event.sender)
    kind = "subagent_result" if event.provenance == PROVENANCE_SUBAGENT else event.message_type
    body = escape_xml(event.content)
    if event.quoted:
        quoted_sender = escape_xml(str(event.quoted.get("sender", "")))
        quoted_text = escape_xml(str(event.quoted.get("content", "")))
        body = f'<quoted sender="{quoted_sender}">{quoted_text}</quoted>\n{body}'
    if event.attachments:
        names = ", ".join(escape_xml(str(a.get("name", "file"))) for a in event.attachments)
        body = f"{body}\n[attachments: {names}]"
    return f'<message sender="{sender}" time="{event.timestamp}" type="{escape_xml(kind)}">{body}</message>'


def render_messages(events: list[InboundEvent]) -> str:
    """Render a merged batch as one structured prompt."""
    lines = ["<messages>"]
    lines.extend(_render_one(e) for e in events)
    lines.append("</messages>")
    return "\n".join(lines)


def select_recent_context(
    events: list[InboundEvent], *, limit: int = 10, minutes: int = 30
) -> list[InboundEvent]:
    cutoff = to_iso(utc_now() - timedelta(minutes=minutes))
    recent = [e for e in events if e.timestamp >= cutoff]
    return recent[-limit:]


def render_subagent_task(task: str, context: list[InboundEvent] | None = None) -> str:
    if not context:
        return task
    history = "\n".join(
        f"[{e.timestamp}] {e.sender_name or e.sender}: {e.content}" for e in context
    )
    return f"Recent conversation:\n{history}\n\nTask:\n{task}"


def render_subagent_result(task: str, text: str) -> str:
    return f"[Task: {task[:100]}]\n{text}"


def render_scheduled_prompt(prompt: str, task_id: str) -> str:
    """Label a scheduled run so the agent knows no user is waiting on it."""
    return (
        f"[SCHEDULED TASK {task_id} - this is an automated run, not a message from a user. "
        f"Use the send_message tool if the result should be posted.]\n\n{prompt}"
    )
