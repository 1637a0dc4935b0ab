"""Tests for switchboard.worker_runner: the in-container request loop."""

import asyncio
import json
import os

import pytest

from switchboard.protocol import WorkerRequest, WorkerResponse, encode_line, extract_framed_output
from switchboard.worker_runner import build_system_prompt, load_env_file, serve_once, serve_persistent


class EchoRunner:
    """Answers every query with its prompt; can be held mid-query."""

    def __init__(self):
        self.release = asyncio.Event()
        self.release.set()
        self.started = []

    async def run(self, request):
        self.started.append(request.request_id)
        await self.release.wait()
        return WorkerResponse(request.request_id, "success", f"echo: {request.prompt}", "sess-1")


def feed(reader, *objs):
    for obj in objs:
        reader.feed_data((obj if isinstance(obj, str) else encode_line(obj)).encode())


def query(request_id, prompt="hi"):
    return WorkerRequest(request_id=request_id, prompt=prompt, namespace="main").to_wire()


class TestServePersistent:
    @pytest.mark.asyncio
    async def test_answers_queries_and_health_until_shutdown(self):
        reader = asyncio.StreamReader()
        out = []
        feed(
            reader,
            {"requestId": "health-1", "command": "health"},
            query("req-1", "one"),
            "not json\n",
            query("req-2", "two"),
            {"requestId": "shutdown", "command": "shutdown"},
            query("req-3", "never"),
        )
        reader.feed_eof()

        await serve_persistent(EchoRunner(), reader, write=out.append)
        by_id = {o["requestId"]: o for o in out}
        assert by_id["health-1"]["status"] == "success"
        assert by_id["req-1"]["result"] == "echo: one"
        assert by_id["req-2"]["newSessionId"] == "sess-1"
        assert "req-3" not in by_id
        # Queries answered in arrival order.
        assert [o["requestId"] for o in out if o["requestId"].startswith("req")] == ["req-1", "req-2"]

    @pytest.mark.asyncio
    async def test_health_answered_while_query_runs(self):
        reader = asyncio.StreamReader()
        runner = EchoRunner()
        runner.release.clear()
        out = []
        serving = asyncio.create_task(serve_persistent(runner, reader, write=out.append))

        feed(reader, query("req-1"))
        while not runner.started:
            await asyncio.sleep(0.001)
        feed(reader, {"requestId": "health-2", "command": "health"})
        while not out:
            await asyncio.sleep(0.001)
        assert out[0]["requestId"] == "health-2"

        runner.release.set()
        reader.feed_eof()
        await serving
        assert out[-1]["requestId"] == "req-1"


class TestServeOnce:
    @pytest.mark.asyncio
    async def test_framed_response(self):
        text = json.dumps(query("req-1", "solo")) + "\n"
        output = await serve_once(EchoRunner(), text)
        response = extract_framed_output(output)
        assert response.request_id == "req-1"
        assert response.result == "echo: solo"

    @pytest.mark.asyncio
    async def test_bad_request(self):
        response = extract_framed_output(await serve_once(EchoRunner(), "garbage"))
        assert response.status == "error"
        assert "bad request" in response.error


class TestHelpers:
    def test_load_env_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SB_TEST_TOKEN", "unset")
        monkeypatch.delenv("SB_TEST_TOKEN")
        monkeypatch.setenv("SB_TEST_KEEP", "original")
        env_file = tmp_path / "env"
        env_file.write_text("# creds\nSB_TEST_TOKEN=abc=123\nSB_TEST_KEEP=override\nnot a pair\n")
        assert load_env_file(env_file) == 2
        assert os.environ["SB_TEST_TOKEN"] == "abc=123"
        assert os.environ["SB_TEST_KEEP"] == "original"

    def test_missing_env_file(self, tmp_path):
        assert load_env_file(tmp_path / "nope") == 0

    def test_system_prompt_mentions_privileges(self):
        plain = build_system_prompt(WorkerRequest("r", prompt="p", namespace="team"))
        main = build_system_prompt(WorkerRequest("r", prompt="p", namespace="main", privileged=True))
        scheduled = build_system_prompt(WorkerRequest("r", prompt="p", namespace="team", is_scheduled=True))
        assert "team" in plain
        assert "spawn subagents" not in plain
        assert "spawn subagents" in main
        assert "schedule" in scheduled
