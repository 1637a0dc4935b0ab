"""Shared test fixtures for the Switchboard test suite."""

import asyncio

import pytest

from switchboard.actions import ActionChannel
from switchboard.config import SwitchboardConfig
from switchboard.models import InboundEvent, Namespace, utc_now_iso
from switchboard.protocol import WorkerRequest, WorkerResponse, frame_output
from switchboard.registry import NamespaceRegistry
from switchboard.store import Store
from switchboard.worker import WorkerSpec


@pytest.fixture
def config(tmp_path):
    """Provide a config rooted in a temporary home."""
    cfg = SwitchboardConfig(home=tmp_path / "home")
    cfg.router.merge_window_seconds = 3.0
    return cfg


@pytest.fixture
def store(tmp_path):
    """Provide a Store backed by a temporary database."""
    return Store(db_path=tmp_path / "test_switchboard.db")


@pytest.fixture
def registry(store):
    reg = NamespaceRegistry(store, privileged_folder="main")
    reg.register(Namespace("slack:CMAIN", "Main", "main", "@Andy"))
    reg.register(Namespace("slack:CTEAM", "Team", "team", "@Andy"))
    reg.register(Namespace("slack:COTHER", "Other", "other", "@Andy"))
    return reg


@pytest.fixture
def actions():
    return ActionChannel()


def make_event(key, content, msg_id=None, ts=None, sender="U1"):
    ts = ts or utc_now_iso()
    return InboundEvent(
        id=msg_id or f"m-{ts}",
        conversation_key=key,
        sender=sender,
        sender_name="Alice",
        content=content,
        timestamp=ts,
    )


class FakeProcess:
    """In-memory stand-in for a WorkerProcess."""

    def __init__(self, name, responder=None):
        self.name = name
        self.responder = responder
        self.sent: list[dict] = []
        self.returncode = None
        self.terminated = False
        self.stdin_closed = False
        self.stderr_tail = ""
        self._line_callbacks = []
        self._exit_callbacks = []
        self._exited = asyncio.Event()

    @property
    def running(self):
        return self.returncode is None

    def on_line(self, cb):
        self._line_callbacks.append(cb)

    def on_exit(self, cb):
        self._exit_callbacks.append(cb)

    def emit_line(self, line):
        for cb in list(self._line_callbacks):
            cb(line)

    def exit(self, code=0):
        if self.returncode is not None:
            return
        self.returncode = code
        self._exited.set()
        for cb in list(self._exit_callbacks):
            cb(code)

    async def send_line(self, obj):
        self.sent.append(obj)
        if self.responder:
            await self.responder(self, obj)

    async def close_stdin(self):
        self.stdin_closed = True

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    async def terminate(self, grace=5.0):
        self.terminated = True
        self.exit(-15)


class FakeRuntime:
    """Records spawns; each spawned FakeProcess uses ``responder``."""

    def __init__(self, responder=None):
        self.responder = responder
        self.spawned: list[FakeProcess] = []
        self.specs: list[WorkerSpec] = []
        self.stopped: list[str] = []
        self.fail_spawn = False

    def build_spec(self, namespace, *, privileged, persistent=False, name=None):
        suffix = "persistent" if persistent else str(len(self.specs))
        return WorkerSpec(name=name or f"test-{namespace.folder}-{suffix}", mounts=[], persistent=persistent)

    async def spawn(self, spec):
        if self.fail_spawn:
            raise OSError("spawn failed")
        self.specs.append(spec)
        proc = FakeProcess(spec.name, self.responder)
        self.spawned.append(proc)
        return proc

    async def stop_container(self, name):
        self.stopped.append(name)

    async def cleanup_stale(self):
        return 0


def one_shot_responder(result="done", delay=0.0, session="sess-1"):
    """Responder for ephemeral workers: answer the request then exit."""

    async def respond(proc, obj):
        request = WorkerRequest.from_wire(obj)

        async def finish():
            if delay:
                await asyncio.sleep(delay)
            if proc.returncode is not None:
                return
            response = WorkerResponse(request.request_id, "success", result, session)
            for line in frame_output(response).splitlines():
                proc.emit_line(line)
            proc.exit(0)

        asyncio.get_running_loop().create_task(finish())

    return respond


@pytest.fixture
def fake_runtime():
    return FakeRuntime(one_shot_responder())
