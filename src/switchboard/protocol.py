"""Wire and mailbox protocol: typed messages, validated on receipt.

Two formats live here:

- The worker wire protocol: newline-delimited JSON over a worker's
  stdin/stdout. Persistent workers exchange one request/response per line,
  correlated by ``requestId``. One-shot workers read a single request and
  print their response between output markers.
- The mailbox envelope: one JSON object per file, written by a worker into
  its namespace directory. The ``type`` field selects a closed set of command
  variants; anything else is a ``ProtocolParseError``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from switchboard.errors import ProtocolParseError
from switchboard.models import CONTEXT_MODES

OUTPUT_START_MARKER = "---SWITCHBOARD_OUTPUT_START---"
OUTPUT_END_MARKER = "---SWITCHBOARD_OUTPUT_END---"

WORKER_COMMANDS = ("query", "health", "shutdown")
RESPONSE_STATUSES = ("success", "error")


# --- Worker wire protocol ---


@dataclass
class WorkerRequest:
    """A single unit of work sent to a worker process."""

    request_id: str
    command: str = "query"
    prompt: str | None = None
    session_id: str | None = None
    namespace: str | None = None
    conversation_key: str | None = None
    privileged: bool = False
    is_scheduled: bool = False

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"requestId": self.request_id, "command": self.command}
        if self.prompt is not None:
            data["prompt"] = self.prompt
        if self.session_id:
            data["sessionId"] = self.session_id
        if self.namespace:
            data["namespace"] = self.namespace
        if self.conversation_key:
            data["conversationKey"] = self.conversation_key
        if self.command == "query":
            data["privileged"] = self.privileged
            data["isScheduledTask"] = self.is_scheduled
        return data

    @classmethod
    def from_wire(cls, data: Any) -> "WorkerRequest":
        if not isinstance(data, dict):
            raise ProtocolParseError("request must be a JSON object")
        request_id = data.get("requestId")
        command = data.get("command", "query")
        if not isinstance(request_id, str) or not request_id:
            raise ProtocolParseError("request missing requestId")
        if command not in WORKER_COMMANDS:
            raise ProtocolParseError(f"unknown command: {command!r}")
        prompt = data.get("prompt")
        if command == "query" and not isinstance(prompt, str):
            raise ProtocolParseError("query request missing prompt")
        return cls(
            request_id=request_id,
            command=command,
            prompt=prompt,
            session_id=data.get("sessionId") or None,
            namespace=data.get("namespace") or None,
            conversation_key=data.get("conversationKey") or None,
            privileged=bool(data.get("privileged", False)),
            is_scheduled=bool(data.get("isScheduledTask", False)),
        )


@dataclass
class WorkerResponse:
    """Reply from a worker, persistent or one-shot."""

    request_id: str
    status: str
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "requestId": self.request_id,
            "status": self.status,
            "result": self.result,
        }
        if self.new_session_id:
            data["newSessionId"] = self.new_session_id
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_wire(cls, data: Any) -> "WorkerResponse":
        if not isinstance(data, dict):
            raise ProtocolParseError("response must be a JSON object")
        request_id = data.get("requestId")
        status = data.get("status")
        result = data.get("result")
        if not isinstance(request_id, str) or not request_id:
            raise ProtocolParseError("response missing requestId")
        if status not in RESPONSE_STATUSES:
            raise ProtocolParseError(f"invalid response status: {status!r}")
        if result is not None and not isinstance(result, str):
            raise ProtocolParseError("response result must be a string or null")
        return cls(
            request_id=request_id,
            status=status,
            result=result,
            new_session_id=data.get("newSessionId") or None,
            error=data.get("error") or None,
        )


def encode_line(obj: dict[str, Any]) -> str:
    """Serialize one wire message. Embedded newlines are escaped by json."""
    return json.dumps(obj, ensure_ascii=False) + "\n"


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"invalid JSON: {e}") from e


def parse_response_line(line: str) -> WorkerResponse:
    return WorkerResponse.from_wire(_load_json(line))


def parse_request_line(line: str) -> WorkerRequest:
    return WorkerRequest.from_wire(_load_json(line))


def frame_output(response: WorkerResponse) -> str:
    """Render a one-shot response between output markers."""
    return (
        f"{OUTPUT_START_MARKER}\n"
        f"{json.dumps(response.to_wire(), ensure_ascii=False)}\n"
        f"{OUTPUT_END_MARKER}\n"
    )


def extract_framed_output(stdout: str) -> WorkerResponse:
    """Pull the last marker-framed response out of a one-shot worker's stdout."""
    start = stdout.rfind(OUTPUT_START_MARKER)
    end = stdout.rfind(OUTPUT_END_MARKER)
    if start == -1 or end == -1 or end < start:
        raise ProtocolParseError("worker output markers not found")
    body = stdout[start + len(OUTPUT_START_MARKER):end].strip()
    return WorkerResponse.from_wire(_load_json(body))


# --- Mailbox envelopes ---


@dataclass(frozen=True)
class SendMessageCommand:
    conversation_key: str
    text: str


@dataclass(frozen=True)
class ScheduleTaskCommand:
    prompt: str
    schedule_type: str
    schedule_value: str
    context_mode: str = "isolated"
    target_namespace: str | None = None


@dataclass(frozen=True)
class PauseTaskCommand:
    task_id: str


@dataclass(frozen=True)
class ResumeTaskCommand:
    task_id: str


@dataclass(frozen=True)
class CancelTaskCommand:
    task_id: str


@dataclass(frozen=True)
class RegisterNamespaceCommand:
    conversation_key: str
    name: str
    folder: str
    trigger: str


@dataclass(frozen=True)
class SpawnSubagentCommand:
    task: str
    conversation_key: str
    include_context: bool = False


@dataclass(frozen=True)
class RefreshSnapshotCommand:
    pass


MailboxCommand = Union[
    SendMessageCommand,
    ScheduleTaskCommand,
    PauseTaskCommand,
    ResumeTaskCommand,
    CancelTaskCommand,
    RegisterNamespaceCommand,
    SpawnSubagentCommand,
    RefreshSnapshotCommand,
]

# type -> (command class, required str fields, optional fields with expected type)
_ENVELOPE_SCHEMA: dict[str, tuple[type, tuple[str, ...], dict[str, type]]] = {
    "message": (SendMessageCommand, ("conversation_key", "text"), {}),
    "schedule_task": (
        ScheduleTaskCommand,
        ("prompt", "schedule_type", "schedule_value"),
        {"context_mode": str, "target_namespace": str},
    ),
    "pause_task": (PauseTaskCommand, ("task_id",), {}),
    "resume_task": (ResumeTaskCommand, ("task_id",), {}),
    "cancel_task": (CancelTaskCommand, ("task_id",), {}),
    "register_namespace": (
        RegisterNamespaceCommand,
        ("conversation_key", "name", "folder", "trigger"),
        {},
    ),
    "spawn_subagent": (
        SpawnSubagentCommand,
        ("task", "conversation_key"),
        {"include_context": bool},
    ),
    "refresh_snapshot": (RefreshSnapshotCommand, (), {}),
}

MAILBOX_TYPES = tuple(_ENVELOPE_SCHEMA)


@dataclass(frozen=True)
class MailboxEnvelope:
    """A validated mailbox command.

    ``source_namespace`` always comes from the directory the file was found
    in, never from the file contents.
    """

    type: str
    source_namespace: str
    payload: MailboxCommand


def parse_envelope(data: Any, source_namespace: str) -> MailboxEnvelope:
    """Validate a decoded mailbox file against the closed command schema."""
    if not isinstance(data, dict):
        raise ProtocolParseError("envelope must be a JSON object")
    kind = data.get("type")
    if kind not in _ENVELOPE_SCHEMA:
        raise ProtocolParseError(f"unknown envelope type: {kind!r}")

    command_cls, required, optional = _ENVELOPE_SCHEMA[kind]
    kwargs: dict[str, Any] = {}
    for name in required:
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ProtocolParseError(f"{kind}: missing or empty field {name!r}")
        kwargs[name] = value
    for name, expected in optional.items():
        if name not in data or data[name] is None:
            continue
        if not isinstance(data[name], expected):
            raise ProtocolParseError(f"{kind}: field {name!r} must be {expected.__name__}")
        kwargs[name] = data[name]

    if kind == "schedule_task" and kwargs.get("context_mode", "isolated") not in CONTEXT_MODES:
        raise ProtocolParseError(f"schedule_task: invalid context_mode {kwargs['context_mode']!r}")

    return MailboxEnvelope(type=kind, source_namespace=source_namespace, payload=command_cls(**kwargs))


def parse_envelope_text(text: str, source_namespace: str) -> MailboxEnvelope:
    return parse_envelope(_load_json(text), source_namespace)


def envelope_to_dict(kind: str, **fields: Any) -> dict[str, Any]:
    """Build a mailbox file body; used by in-worker tools."""
    if kind not in _ENVELOPE_SCHEMA:
        raise ValueError(f"unknown envelope type: {kind}")
    return {"type": kind, **{k: v for k, v in fields.items() if v is not None}}
