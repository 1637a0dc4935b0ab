"""Mailbox tools exposed to the agent inside a worker container.

Each tool writes one envelope file into the namespace's mailbox
(``/workspace/ipc``) with a temp-file-then-rename so the orchestrator never
reads a half-written command. The orchestrator decides what the namespace is
allowed to do; these tools only shape the request.
"""

import json
import os
import secrets
import time
from pathlib import Path

from claude_agent_sdk import create_sdk_mcp_server, tool

from switchboard.errors import SchedulingSpecError
from switchboard.mailbox import NAMESPACES_SNAPSHOT, TASKS_SNAPSHOT, write_json_atomic
from switchboard.protocol import envelope_to_dict
from switchboard.scheduler import validate_schedule

DEFAULT_IPC_DIR = "/workspace/ipc"


def _text(payload) -> dict:
    if not isinstance(payload, str):
        payload = json.dumps(payload, indent=2)
    return {"content": [{"type": "text", "text": payload}]}


class MailboxWriter:
    """Writes envelopes for one namespace; tracks the conversation being served."""

    def __init__(self, ipc_dir: str | Path | None = None, *, privileged: bool = False, timezone: str = "UTC"):
        self.ipc_dir = Path(ipc_dir or os.environ.get("SWITCHBOARD_IPC_DIR", DEFAULT_IPC_DIR))
        self.privileged = privileged
        self.timezone = timezone
        self.conversation_key: str | None = None

    def write(self, subqueue: str, kind: str, **fields) -> Path:
        path = self.ipc_dir / subqueue / f"{int(time.time() * 1000)}-{secrets.token_hex(4)}.json"
        write_json_atomic(path, envelope_to_dict(kind, **fields))
        return path

    def read_snapshot(self, name: str):
        path = self.ipc_dir / name
        if not path.exists():
            return []
        return json.loads(path.read_text())


def build_mailbox_tools(writer: MailboxWriter) -> list:
    """Mailbox tools for this worker; privileged workers get the management tools too."""

    @tool(
        "send_message",
        "Send a message to the current conversation right away, before your final answer.",
        {"text": str},
    )
    async def send_message(args: dict) -> dict:
        if not writer.conversation_key:
            return _text("No active conversation to send to.")
        writer.write("messages", "message", conversation_key=writer.conversation_key, text=args["text"])
        return _text("Message queued.")

    @tool(
        "schedule_task",
        "Schedule a prompt to run later. schedule_type is cron (e.g. '0 9 * * 1'), "
        "interval (milliseconds) or once (ISO timestamp). context_mode is isolated or shared.",
        {
            "prompt": str,
            "schedule_type": str,
            "schedule_value": str,
            "context_mode": str,
            "target_namespace": str,
        },
    )
    async def schedule_task(args: dict) -> dict:
        try:
            validate_schedule(args["schedule_type"], args["schedule_value"], writer.timezone)
        except SchedulingSpecError as e:
            return _text(f"Invalid schedule: {e}")
        writer.write(
            "tasks",
            "schedule_task",
            prompt=args["prompt"],
            schedule_type=args["schedule_type"],
            schedule_value=args["schedule_value"],
            context_mode=args.get("context_mode") or "isolated",
            target_namespace=args.get("target_namespace") or None,
        )
        return _text("Task scheduling requested.")

    @tool("list_tasks", "List scheduled tasks visible to this namespace.", {})
    async def list_tasks(args: dict) -> dict:
        tasks = writer.read_snapshot(TASKS_SNAPSHOT)
        return _text(tasks if tasks else "No scheduled tasks.")

    def _task_tool(kind: str, description: str):
        @tool(kind, description, {"task_id": str})
        async def _handler(args: dict) -> dict:
            writer.write("tasks", kind, task_id=args["task_id"])
            return _text(f"{kind} requested for {args['task_id']}.")

        return _handler

    tools = [
        send_message,
        schedule_task,
        list_tasks,
        _task_tool("pause_task", "Pause a scheduled task."),
        _task_tool("resume_task", "Resume a paused task."),
        _task_tool("cancel_task", "Cancel and delete a scheduled task."),
    ]

    if writer.privileged:

        @tool(
            "register_namespace",
            "Register a new conversation so the assistant responds there. "
            "folder must be letters, digits, '-' or '_'.",
            {"conversation_key": str, "name": str, "folder": str, "trigger": str},
        )
        async def register_namespace(args: dict) -> dict:
            writer.write("tasks", "register_namespace", **{k: args[k] for k in ("conversation_key", "name", "folder", "trigger")})
            return _text(f"Registration requested for {args['folder']}.")

        @tool("list_namespaces", "List registered conversations.", {})
        async def list_namespaces(args: dict) -> dict:
            return _text(writer.read_snapshot(NAMESPACES_SNAPSHOT) or "No namespaces registered.")

        @tool(
            "spawn_subagent",
            "Run a task in a separate worker; its result is posted to the conversation when done.",
            {"task": str, "conversation_key": str, "include_context": bool},
        )
        async def spawn_subagent(args: dict) -> dict:
            key = args.get("conversation_key") or writer.conversation_key
            if not key:
                return _text("No conversation to report to.")
            writer.write(
                "tasks",
                "spawn_subagent",
                task=args["task"],
                conversation_key=key,
                include_context=bool(args.get("include_context", False)),
            )
            return _text("Subagent requested.")

        @tool("refresh_snapshot", "Refresh the task and namespace snapshots.", {})
        async def refresh_snapshot(args: dict) -> dict:
            writer.write("tasks", "refresh_snapshot")
            return _text("Refresh requested.")

        tools.extend([register_namespace, list_namespaces, spawn_subagent, refresh_snapshot])

    return tools


def create_mailbox_mcp_server(writer: MailboxWriter):
    """Build the in-process MCP server with the mailbox tools for this worker."""
    return create_sdk_mcp_server(name="switchboard", version="0.1.0", tools=build_mailbox_tools(writer))
