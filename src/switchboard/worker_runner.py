"""Entry point inside a worker container.

Two modes, selected by ``SWITCHBOARD_PERSISTENT``:

- persistent: read newline-delimited JSON requests from stdin forever and
  answer each on stdout with the same ``requestId``. Queries run one at a
  time; health probes are answered immediately even while a query runs.
- one-shot: read a single request, run it, print the response between the
  output markers, exit.

stdout is reserved for the protocol; logs go to stderr.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    TextBlock,
)

from switchboard.errors import ProtocolParseError
from switchboard.protocol import (
    WorkerRequest,
    WorkerResponse,
    encode_line,
    frame_output,
    parse_request_line,
)
from switchboard.worker_tools import MailboxWriter, create_mailbox_mcp_server

logger = logging.getLogger(__name__)

ENV_FILE = Path("/workspace/env-dir/env")
GROUP_DIR = "/workspace/group"
ALLOWED_TOOLS = [
    "Bash", "Read", "Write", "Edit", "Glob", "Grep",
    "WebSearch", "WebFetch", "Task", "TodoWrite",
    "mcp__switchboard__*",
]


def load_env_file(path: Path = ENV_FILE) -> int:
    """Export KEY=VALUE lines from the mounted credentials file."""
    if not path.exists():
        return 0
    count = 0
    for raw in path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())
        count += 1
    return count


def build_system_prompt(request: WorkerRequest) -> str:
    parts = [
        f"You are an assistant serving the '{request.namespace or 'default'}' conversation.",
        "Your working directory is /workspace/group; files there persist between conversations.",
        "Your final answer is posted to the conversation. Use the send_message tool for "
        "progress updates.",
    ]
    if request.privileged:
        parts.append(
            "This is the main conversation: you can manage tasks for every namespace, "
            "register new conversations, and spawn subagents. The project is mounted at "
            "/workspace/project."
        )
    if request.is_scheduled:
        parts.append("This run was triggered by a schedule; no user is waiting for a reply.")
    return "\n".join(parts)


class QueryRunner:
    """Runs prompts through the Agent SDK with the mailbox tools attached."""

    def __init__(self, writer: MailboxWriter):
        self.writer = writer
        self._mcp_server = create_mailbox_mcp_server(writer)

    def build_options(self, request: WorkerRequest) -> ClaudeAgentOptions:
        options = ClaudeAgentOptions(
            system_prompt=build_system_prompt(request),
            allowed_tools=ALLOWED_TOOLS,
            permission_mode="bypassPermissions",
            cwd=GROUP_DIR if os.path.isdir(GROUP_DIR) else None,
            mcp_servers={"switchboard": self._mcp_server},
        )
        if request.session_id:
            options.resume = request.session_id
        return options

    async def run(self, request: WorkerRequest) -> WorkerResponse:
        self.writer.conversation_key = request.conversation_key
        texts: list[str] = []
        session_id: str | None = None
        result: str | None = None
        error: str | None = None
        try:
            async with ClaudeSDKClient(options=self.build_options(request)) as client:
                await client.query(request.prompt or "")
                async for message in client.receive_response():
                    if isinstance(message, SystemMessage):
                        if message.subtype == "init":
                            session_id = message.data.get("session_id")
                    elif isinstance(message, AssistantMessage):
                        for block in message.content:
                            if isinstance(block, TextBlock):
                                texts.append(block.text)
                    elif isinstance(message, ResultMessage):
                        session_id = message.session_id or session_id
                        if message.is_error:
                            error = message.result or "agent run failed"
                        else:
                            result = message.result
        except Exception as e:
            logger.exception("Query %s failed: %s", request.request_id, e)
            error = str(e) or type(e).__name__

        if error:
            return WorkerResponse(request.request_id, "error", None, session_id, error)
        if result is None and texts:
            result = texts[-1]
        return WorkerResponse(request.request_id, "success", result, session_id)


def _write_stdout(obj: dict) -> None:
    sys.stdout.write(encode_line(obj))
    sys.stdout.flush()


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=16 * 1024 * 1024)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def serve_persistent(runner: QueryRunner, reader: asyncio.StreamReader, write=_write_stdout) -> None:
    """Answer requests from ``reader`` until EOF or a shutdown command."""
    queue: asyncio.Queue[WorkerRequest | None] = asyncio.Queue()

    async def process_queries():
        while True:
            request = await queue.get()
            if request is None:
                return
            response = await runner.run(request)
            write(response.to_wire())

    worker = asyncio.create_task(process_queries())
    try:
        while True:
            raw = await reader.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            try:
                request = parse_request_line(line)
            except ProtocolParseError as e:
                logger.warning("Ignoring malformed request: %s", e)
                continue
            if request.command == "health":
                write({"requestId": request.request_id, "status": "success", "result": "ok"})
            elif request.command == "shutdown":
                logger.info("Shutdown requested")
                break
            else:
                queue.put_nowait(request)
    finally:
        queue.put_nowait(None)
        await worker


async def serve_once(runner: QueryRunner, text: str) -> str:
    """Run the single request in ``text`` and return the framed response."""
    first = next((line for line in text.splitlines() if line.strip()), "")
    try:
        request = parse_request_line(first)
    except ProtocolParseError as e:
        return frame_output(WorkerResponse("unknown", "error", None, None, f"bad request: {e}"))
    return frame_output(await runner.run(request))


async def _main() -> None:
    load_env_file()
    persistent = os.environ.get("SWITCHBOARD_PERSISTENT") == "1"
    writer = MailboxWriter(
        privileged=os.environ.get("SWITCHBOARD_PRIVILEGED") == "1",
        timezone=os.environ.get("TZ", "UTC"),
    )
    runner = QueryRunner(writer)
    if persistent:
        logger.info("Worker running in persistent mode")
        await serve_persistent(runner, await _stdin_reader())
    else:
        text = await asyncio.to_thread(sys.stdin.read)
        sys.stdout.write(await serve_once(runner, text))
        sys.stdout.flush()


def main():
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    asyncio.run(_main())


if __name__ == "__main__":
    main()
