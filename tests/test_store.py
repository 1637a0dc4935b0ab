"""Tests for switchboard.store: SQLite persistence."""

import pytest

from conftest import make_event
from switchboard.models import (
    PROVENANCE_ASSISTANT,
    PROVENANCE_SUBAGENT,
    Namespace,
    ScheduledTask,
    TaskRunLog,
)


def _task(task_id="t-1", owner="team", next_run="2030-01-01T00:00:00.000+00:00", **kwargs):
    return ScheduledTask(
        id=task_id,
        owner_namespace=owner,
        conversation_key=f"slack:{owner}",
        prompt="do it",
        schedule_type=kwargs.pop("schedule_type", "interval"),
        schedule_value=kwargs.pop("schedule_value", "60000"),
        next_run=next_run,
        **kwargs,
    )


class TestMessages:
    def test_new_messages_only_user_provenance(self, store):
        store.store_message(make_event("k1", "hello", "1", "2024-01-01T00:00:01.000+00:00"))
        sub = make_event("k1", "[Task: x]\nresult", "2", "2024-01-01T00:00:02.000+00:00")
        sub.provenance = PROVENANCE_SUBAGENT
        store.store_message(sub)
        new = store.get_new_messages(["k1"], "")
        assert [e.id for e in new] == ["1"]

    def test_new_messages_filters_keys_and_since(self, store):
        store.store_message(make_event("k1", "a", "1", "2024-01-01T00:00:01.000+00:00"))
        store.store_message(make_event("k2", "b", "2", "2024-01-01T00:00:02.000+00:00"))
        store.store_message(make_event("k1", "c", "3", "2024-01-01T00:00:03.000+00:00"))
        new = store.get_new_messages(["k1"], "2024-01-01T00:00:01.000+00:00")
        assert [e.content for e in new] == ["c"]
        assert store.get_new_messages([], "") == []

    def test_messages_since_excludes_assistant(self, store):
        store.store_message(make_event("k1", "q", "1", "2024-01-01T00:00:01.000+00:00"))
        bot = make_event("k1", "answer", "2", "2024-01-01T00:00:02.000+00:00")
        bot.provenance = PROVENANCE_ASSISTANT
        store.store_message(bot)
        sub = make_event("k1", "sub result", "3", "2024-01-01T00:00:03.000+00:00")
        sub.provenance = PROVENANCE_SUBAGENT
        store.store_message(sub)
        history = store.get_messages_since("k1", "")
        assert [e.id for e in history] == ["1", "3"]
        assert history[1].provenance == PROVENANCE_SUBAGENT

    def test_attachments_round_trip(self, store):
        event = make_event("k1", "see file", "1")
        event.attachments = [{"name": "a.png"}]
        store.store_message(event)
        assert store.get_messages_since("k1", "")[0].attachments == [{"name": "a.png"}]

    def test_chat_metadata_keeps_latest_time(self, store):
        store.store_chat_metadata("k1", "2024-01-02T00:00:00", "general")
        store.store_chat_metadata("k1", "2024-01-01T00:00:00")
        chats = store.get_all_chats()
        assert chats[0]["name"] == "general"
        assert chats[0]["last_message_time"] == "2024-01-02T00:00:00"


class TestStateAndSessions:
    def test_namespaces(self, store):
        store.set_namespace(Namespace("k1", "Main", "main", "@Andy"))
        namespaces = store.get_all_namespaces()
        assert namespaces["k1"].folder == "main"

    def test_sessions(self, store):
        assert store.get_session("main") is None
        store.set_session("main", "s1")
        store.set_session("main", "s2")
        assert store.get_session("main") == "s2"

    def test_watermarks(self, store):
        assert store.get_last_agent_timestamp("k1") == ""
        store.set_last_agent_timestamp("k1", "2024-01-01T00:00:00.000+00:00")
        assert store.get_last_agent_timestamp("k1") == "2024-01-01T00:00:00.000+00:00"
        assert store.get_router_state("last_agent:k1") == "2024-01-01T00:00:00.000+00:00"


class TestTasks:
    def test_create_and_get(self, store):
        store.create_task(_task())
        task = store.get_task("t-1")
        assert task.owner_namespace == "team"
        assert task.status == "active"

    def test_update_task_rejects_invalid_columns(self, store):
        store.create_task(_task())
        with pytest.raises(ValueError, match="Invalid task columns"):
            store.update_task("t-1", owner_namespace="main")

    def test_due_tasks_skip_paused_and_future(self, store):
        store.create_task(_task("due", next_run="2024-01-01T00:00:00.000+00:00"))
        store.create_task(_task("future", next_run="2099-01-01T00:00:00.000+00:00"))
        store.create_task(_task("paused", next_run="2024-01-01T00:00:00.000+00:00", status="paused"))
        due = store.get_due_tasks("2025-01-01T00:00:00.000+00:00")
        assert [t.id for t in due] == ["due"]

    def test_after_run_without_next_run_completes(self, store):
        store.create_task(_task(schedule_type="once", schedule_value="2024-01-01T00:00:00"))
        store.update_task_after_run("t-1", None, "ok")
        task = store.get_task("t-1")
        assert task.status == "completed"
        assert task.next_run is None
        assert task.last_result == "ok"
        assert task.last_run

    def test_after_run_with_next_run_stays_active(self, store):
        store.create_task(_task())
        store.update_task_after_run("t-1", "2031-01-01T00:00:00.000+00:00", "ok")
        assert store.get_task("t-1").status == "active"

    def test_list_by_owner(self, store):
        store.create_task(_task("a", owner="team"))
        store.create_task(_task("b", owner="other"))
        assert [t.id for t in store.list_tasks("team")] == ["a"]
        assert len(store.list_tasks()) == 2

    def test_delete_removes_runs(self, store):
        store.create_task(_task())
        store.log_task_run(TaskRunLog("t-1", "2024-01-01T00:00:00", 10, "success", "ok"))
        store.delete_task("t-1")
        assert store.get_task("t-1") is None
        assert store.get_task_runs("t-1") == []

    def test_run_logs_newest_first(self, store):
        store.create_task(_task())
        store.log_task_run(TaskRunLog("t-1", "2024-01-01T00:00:00", 10, "success", "first"))
        store.log_task_run(TaskRunLog("t-1", "2024-01-02T00:00:00", 20, "error", error="boom"))
        runs = store.get_task_runs("t-1")
        assert [r.status for r in runs] == ["error", "success"]
        assert runs[0].error == "boom"
