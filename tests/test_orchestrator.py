"""Tests for switchboard.orchestrator: wiring, message loop, and recovery."""

import pytest

from conftest import FakeRuntime, make_event, one_shot_responder
from switchboard.actions import SendMessage
from switchboard.lifecycle import WorkerState
from switchboard.models import PROVENANCE_SUBAGENT, Namespace
from switchboard.orchestrator import LAST_TIMESTAMP_KEY, Orchestrator

TEAM = Namespace("slack:CTEAM", "Team", "team", "@Andy")
MAIN = Namespace("slack:CMAIN", "Main", "main", "@Andy")


@pytest.fixture
def orchestrator(config, store):
    config.worker.enable_persistent = False
    orch = Orchestrator(config, store=store, runtime=FakeRuntime(one_shot_responder()))
    orch.registry.register(TEAM)
    return orch


class TestIngest:
    def test_unregistered_conversation_only_records_metadata(self, orchestrator, store):
        orchestrator.ingest_event(make_event("slack:CRANDOM", "@Andy hi"), chat_name="random")
        assert store.get_messages_since("slack:CRANDOM", "") == []
        assert store.get_all_chats()[0]["name"] == "random"

    def test_registered_conversation_is_stored(self, orchestrator, store):
        orchestrator.ingest_event(make_event("slack:CTEAM", "@Andy hi", "m1"))
        assert [e.id for e in store.get_messages_since("slack:CTEAM", "")] == ["m1"]


class TestMessageLoop:
    @pytest.mark.asyncio
    async def test_poll_dispatches_and_advances_cursor(self, orchestrator, store):
        ts = "2024-01-01T00:00:01.000+00:00"
        orchestrator.ingest_event(make_event("slack:CTEAM", "@Andy hi", "m1", ts))

        assert await orchestrator.poll_messages() == 1
        assert store.get_router_state(LAST_TIMESTAMP_KEY) == ts
        await orchestrator.router.active_request("slack:CTEAM").task
        assert SendMessage("slack:CTEAM", "Andy: done") in orchestrator.actions.drain()

        assert await orchestrator.poll_messages() == 0

    @pytest.mark.asyncio
    async def test_recover_pending_after_restart(self, orchestrator, store):
        store.store_message(make_event("slack:CTEAM", "@Andy answered", "m1", "2024-01-01T00:00:01.000+00:00"))
        store.set_last_agent_timestamp("slack:CTEAM", "2024-01-01T00:00:01.000+00:00")
        sub = make_event("slack:CTEAM", "[Task: x]\nresult", "s1", "2024-01-01T00:00:02.000+00:00")
        sub.provenance = PROVENANCE_SUBAGENT
        store.store_message(sub)
        store.store_message(make_event("slack:CTEAM", "@Andy unanswered", "m2", "2024-01-01T00:00:03.000+00:00"))

        assert orchestrator.recover_pending() == 1
        request = orchestrator.router.active_request("slack:CTEAM")
        assert [e.id for e in request.events] == ["m2"]
        await request.task


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_init_starts_persistent_worker_for_privileged(self, config, store):
        config.router.message_poll_interval = 60
        config.worker.shutdown_grace_seconds = 0.01
        config.scheduler.poll_interval = 60
        runtime = FakeRuntime()
        orch = Orchestrator(config, store=store, runtime=runtime)
        orch.registry.register(MAIN)

        await orch.init()
        try:
            assert orch.manager is not None
            assert orch.router.manager is orch.manager
            assert orch.manager.state == WorkerState.RUNNING
            assert runtime.specs[0].persistent
            assert (config.ipc_dir / "main" / "tasks").is_dir()
            assert orch.status()["persistent_state"] == "running"
        finally:
            await orch.shutdown()
        assert orch.manager.state == WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_persistent_disabled(self, orchestrator, config):
        config.router.message_poll_interval = 60
        config.worker.shutdown_grace_seconds = 0.01
        orchestrator.registry.register(MAIN)
        await orchestrator.init()
        try:
            assert orchestrator.manager is None
            assert orchestrator.status()["persistent_state"] == "disabled"
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_registering_privileged_after_start(self, config, store):
        config.router.message_poll_interval = 60
        config.worker.shutdown_grace_seconds = 0.01
        runtime = FakeRuntime()
        orch = Orchestrator(config, store=store, runtime=runtime)
        await orch.init()
        try:
            assert orch.manager is None
            await orch.register_namespace(MAIN)
            assert orch.manager.state == WorkerState.RUNNING
        finally:
            await orch.shutdown()
