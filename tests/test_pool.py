"""Tests for switchboard.pool: one-shot workers."""

import asyncio

import pytest

from conftest import FakeRuntime, one_shot_responder
from switchboard.cancellation import CancelToken
from switchboard.errors import RequestCancelled
from switchboard.models import Namespace
from switchboard.pool import EphemeralPool
from switchboard.protocol import WorkerRequest, WorkerResponse, frame_output

TEAM = Namespace("slack:CTEAM", "Team", "team", "@Andy")


def _request(prompt="hello"):
    return WorkerRequest(request_id="req-1", prompt=prompt, namespace="team", conversation_key="slack:CTEAM")


class TestEphemeralPool:
    @pytest.mark.asyncio
    async def test_successful_run(self, fake_runtime):
        pool = EphemeralPool(fake_runtime)
        response = await pool.run(_request(), TEAM)
        assert response.ok
        assert response.result == "done"
        assert response.new_session_id == "sess-1"
        assert response.request_id == "req-1"

        proc = fake_runtime.spawned[0]
        assert proc.sent[0]["prompt"] == "hello"
        assert proc.stdin_closed
        assert not fake_runtime.specs[0].persistent
        assert pool.active_count == 0

    @pytest.mark.asyncio
    async def test_error_result_is_passed_through(self):
        async def respond(proc, obj):
            for line in frame_output(WorkerResponse(obj["requestId"], "error", error="agent blew up")).splitlines():
                proc.emit_line(line)
            proc.exit(1)

        pool = EphemeralPool(FakeRuntime(respond))
        response = await pool.run(_request(), TEAM)
        assert not response.ok
        assert response.error == "agent blew up"

    @pytest.mark.asyncio
    async def test_exit_without_markers_is_an_error(self):
        async def respond(proc, obj):
            proc.emit_line("Traceback (most recent call last):")
            proc.exit(1)

        pool = EphemeralPool(FakeRuntime(respond))
        response = await pool.run(_request(), TEAM)
        assert response.status == "error"
        assert "code 1" in response.error

    @pytest.mark.asyncio
    async def test_timeout_terminates_worker(self):
        runtime = FakeRuntime()
        pool = EphemeralPool(runtime, timeout=0.05)
        response = await pool.run(_request(), TEAM)
        assert response.status == "error"
        assert "timed out" in response.error
        assert runtime.spawned[0].terminated
        assert runtime.stopped == [runtime.specs[0].name]

    @pytest.mark.asyncio
    async def test_cancel_mid_run_terminates(self):
        runtime = FakeRuntime(one_shot_responder(delay=5.0))
        pool = EphemeralPool(runtime)
        token = CancelToken()

        task = asyncio.create_task(pool.run(_request(), TEAM, token))
        while not runtime.spawned or not runtime.spawned[0].sent:
            await asyncio.sleep(0.001)
        token.cancel("superseded")

        with pytest.raises(RequestCancelled):
            await task
        assert runtime.spawned[0].terminated
        assert runtime.stopped == [runtime.specs[0].name]
        assert pool.active_count == 0

    @pytest.mark.asyncio
    async def test_pre_cancelled_never_spawns(self, fake_runtime):
        token = CancelToken()
        token.cancel("superseded")
        with pytest.raises(RequestCancelled):
            await EphemeralPool(fake_runtime).run(_request(), TEAM, token)
        assert fake_runtime.spawned == []

    @pytest.mark.asyncio
    async def test_shutdown_kills_active_workers(self):
        runtime = FakeRuntime()
        pool = EphemeralPool(runtime)
        task = asyncio.create_task(pool.run(_request(), TEAM))
        while pool.active_count == 0:
            await asyncio.sleep(0.001)

        await pool.shutdown()
        assert runtime.spawned[0].terminated
        response = await task
        assert response.status == "error"
