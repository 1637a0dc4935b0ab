"""Tests for switchboard.mailbox: polling, quarantine, and snapshots."""

import json

import pytest

from switchboard.mailbox import (
    NAMESPACES_SNAPSHOT,
    TASKS_SNAPSHOT,
    Mailbox,
    write_json_atomic,
)
from switchboard.models import Namespace, ScheduledTask


@pytest.fixture
def received():
    return []


@pytest.fixture
def mailbox(tmp_path, received):
    async def handler(envelope):
        received.append(envelope)

    box = Mailbox(tmp_path / "ipc", handler)
    box.ensure_namespace("team")
    box.ensure_namespace("main")
    return box


def drop(box, folder, sub, name, body):
    path = box.namespace_dir(folder) / sub / name
    path.write_text(body if isinstance(body, str) else json.dumps(body))
    return path


class TestPolling:
    @pytest.mark.asyncio
    async def test_valid_files_are_handled_and_removed(self, mailbox, received):
        msg = drop(mailbox, "team", "messages", "001.json",
                   {"type": "message", "conversation_key": "slack:CTEAM", "text": "hi"})
        task = drop(mailbox, "team", "tasks", "002.json", {"type": "pause_task", "task_id": "t-1"})

        assert await mailbox.poll_once() == 2
        assert [e.type for e in received] == ["message", "pause_task"]
        assert not msg.exists()
        assert not task.exists()
        assert mailbox.processed == 2

    @pytest.mark.asyncio
    async def test_source_namespace_is_the_directory(self, mailbox, received):
        drop(mailbox, "team", "messages", "001.json", {
            "type": "message", "conversation_key": "slack:CMAIN", "text": "hi", "source_namespace": "main",
        })
        await mailbox.poll_once()
        assert received[0].source_namespace == "team"

    @pytest.mark.asyncio
    async def test_files_processed_in_name_order(self, mailbox, received):
        for name in ("b.json", "a.json", "c.json"):
            drop(mailbox, "team", "messages", name,
                 {"type": "message", "conversation_key": "k", "text": name})
        await mailbox.poll_once()
        assert [e.payload.text for e in received] == ["a.json", "b.json", "c.json"]

    @pytest.mark.asyncio
    async def test_temp_files_are_ignored(self, mailbox, received):
        drop(mailbox, "team", "messages", ".partial.json.tmp", "{")
        assert await mailbox.poll_once() == 0
        assert mailbox.quarantined == 0

    @pytest.mark.asyncio
    async def test_invalid_folder_names_are_skipped(self, mailbox, received):
        bad = mailbox.ipc_dir / "Bad Folder" / "messages"
        bad.mkdir(parents=True)
        (bad / "001.json").write_text(json.dumps({"type": "message", "conversation_key": "k", "text": "x"}))
        assert await mailbox.poll_once() == 0
        assert received == []


class TestQuarantine:
    @pytest.mark.asyncio
    async def test_malformed_json_is_quarantined(self, mailbox, received):
        drop(mailbox, "team", "tasks", "bad.json", "{not json")
        good = drop(mailbox, "team", "tasks", "good.json", {"type": "resume_task", "task_id": "t"})

        assert await mailbox.poll_once() == 1
        assert (mailbox.errors_dir / "team-bad.json").read_text() == "{not json"
        assert not good.exists()
        assert mailbox.quarantined == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unknown_type_is_quarantined(self, mailbox):
        drop(mailbox, "team", "tasks", "x.json", {"type": "rm_rf"})
        await mailbox.poll_once()
        assert (mailbox.errors_dir / "team-x.json").exists()

    @pytest.mark.asyncio
    async def test_wrong_subqueue_is_quarantined(self, mailbox, received):
        drop(mailbox, "team", "tasks", "m.json", {"type": "message", "conversation_key": "k", "text": "x"})
        drop(mailbox, "team", "messages", "t.json", {"type": "cancel_task", "task_id": "t"})
        await mailbox.poll_once()
        assert received == []
        assert (mailbox.errors_dir / "team-m.json").exists()
        assert (mailbox.errors_dir / "team-t.json").exists()

    @pytest.mark.asyncio
    async def test_handler_failure_is_quarantined(self, tmp_path):
        async def handler(envelope):
            raise RuntimeError("db locked")

        box = Mailbox(tmp_path / "ipc", handler)
        box.ensure_namespace("team")
        drop(box, "team", "tasks", "t.json", {"type": "cancel_task", "task_id": "t"})
        assert await box.poll_once() == 0
        assert (box.errors_dir / "team-t.json").exists()


class TestSnapshots:
    def test_tasks_snapshot(self, mailbox):
        task = ScheduledTask(
            id="t-1", owner_namespace="team", conversation_key="slack:CTEAM",
            prompt="p", schedule_type="interval", schedule_value="1000", next_run="2030-01-01T00:00:00",
        )
        mailbox.write_tasks_snapshot("team", [task])
        data = json.loads((mailbox.namespace_dir("team") / TASKS_SNAPSHOT).read_text())
        assert data[0]["id"] == "t-1"
        assert data[0]["status"] == "active"

    def test_namespaces_snapshot(self, mailbox):
        mailbox.write_namespaces_snapshot("main", [Namespace("slack:C1", "Main", "main", "@Andy")])
        data = json.loads((mailbox.namespace_dir("main") / NAMESPACES_SNAPSHOT).read_text())
        assert data == [{
            "conversation_key": "slack:C1", "name": "Main", "folder": "main",
            "trigger": "@Andy", "added_at": data[0]["added_at"],
        }]

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "out" / "data.json"
        write_json_atomic(target, {"a": 1})
        write_json_atomic(target, {"a": 2})
        assert json.loads(target.read_text()) == {"a": 2}
        assert [p.name for p in target.parent.iterdir()] == ["data.json"]
