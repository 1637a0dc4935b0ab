"""Worker process adapter: spawn isolated agent containers and talk to them.

Wraps the container CLI (docker by default). Each worker is a
``<runtime> run -i --rm`` process whose stdin/stdout carry the wire protocol.
Mounts follow a fixed contract per namespace:

- /workspace/group        the namespace's working directory (read-write)
- /workspace/project      project root (privileged namespace only)
- /workspace/global       shared directory (read-only, non-privileged only)
- /workspace/ipc          the namespace's mailbox (messages/, tasks/)
- /home/worker/.claude    isolated agent session state
- /workspace/env-dir      filtered credentials file (read-only)
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from switchboard.config import SwitchboardConfig
from switchboard.errors import WorkerUnavailable
from switchboard.models import Namespace
from switchboard.protocol import encode_line

logger = logging.getLogger(__name__)

WORKER_HOME = "/home/worker"
# Large enough for a single JSON line carrying a long agent reply.
STREAM_LIMIT = 16 * 1024 * 1024


def resolve_runtime_bin(name: str) -> str:
    """Find the container CLI on PATH or in the usual install locations."""
    runtime_bin = shutil.which(name) or next(
        (
            p for p in (
                f"/usr/bin/{name}",
                f"/usr/local/bin/{name}",
                f"/opt/homebrew/bin/{name}",
            )
            if os.path.exists(p)
        ),
        None,
    )
    if not runtime_bin:
        raise FileNotFoundError(
            f"{name} CLI not found. Checked SWITCHBOARD_CONTAINER_BIN, PATH, "
            f"/usr/bin/{name}, /usr/local/bin/{name}, /opt/homebrew/bin/{name}"
        )
    return runtime_bin


async def _run_container_cmd(runtime_bin: str, *args: str, timeout: int = 60) -> dict:
    """Execute a container CLI command and return parsed output."""
    proc = await asyncio.create_subprocess_exec(
        runtime_bin,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    return {
        "exit_code": proc.returncode,
        "stdout": stdout.decode().strip(),
        "stderr": stderr.decode().strip(),
    }


@dataclass
class VolumeMount:
    host_path: Path
    container_path: str
    readonly: bool = False

    def to_arg(self) -> str:
        suffix = ":ro" if self.readonly else ""
        return f"{self.host_path}:{self.container_path}{suffix}"


@dataclass
class WorkerSpec:
    """Everything needed to start one worker container."""

    name: str
    mounts: list[VolumeMount]
    env: dict[str, str] = field(default_factory=dict)
    persistent: bool = False


class WorkerProcess:
    """Handle on a running worker: line-based I/O plus exit notification."""

    def __init__(self, name: str, proc: asyncio.subprocess.Process):
        self.name = name
        self._proc = proc
        self._line_callbacks: list[Callable[[str], Any]] = []
        self._exit_callbacks: list[Callable[[int | None], Any]] = []
        self._stderr_tail: deque[str] = deque(maxlen=50)
        self._exited = asyncio.Event()
        self._pump_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def running(self) -> bool:
        return not self._exited.is_set()

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def on_line(self, callback: Callable[[str], Any]) -> None:
        self._line_callbacks.append(callback)

    def on_exit(self, callback: Callable[[int | None], Any]) -> None:
        self._exit_callbacks.append(callback)

    def start(self) -> None:
        """Begin pumping stdout lines to callbacks."""
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump(), name=f"worker-{self.name}")

    async def _pump(self) -> None:
        stderr_task = asyncio.create_task(self._pump_stderr())
        try:
            while True:
                try:
                    raw = await self._proc.stdout.readline()
                except ValueError as e:
                    logger.warning("Worker %s emitted an oversized line: %s", self.name, e)
                    continue
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                for callback in list(self._line_callbacks):
                    try:
                        callback(line)
                    except Exception as e:
                        logger.exception("Line callback error for worker %s: %s", self.name, e)
            await stderr_task
        finally:
            code = await self._proc.wait()
            self._exited.set()
            logger.info("Worker %s exited with code %s", self.name, code)
            for callback in list(self._exit_callbacks):
                try:
                    callback(code)
                except Exception as e:
                    logger.exception("Exit callback error for worker %s: %s", self.name, e)

    async def _pump_stderr(self) -> None:
        if self._proc.stderr is None:
            return
        while True:
            try:
                raw = await self._proc.stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            line = raw.decode(errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)
                logger.debug("[%s] %s", self.name, line)

    async def send_line(self, obj: dict) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing() or not self.running:
            raise WorkerUnavailable(f"worker {self.name} is not accepting input")
        stdin.write(encode_line(obj).encode())
        await stdin.drain()

    async def close_stdin(self) -> None:
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    async def wait(self) -> int | None:
        if self._pump_task is None:
            return await self._proc.wait()
        await self._exited.wait()
        return self._proc.returncode

    async def terminate(self, grace: float = 5.0) -> None:
        """SIGTERM, then SIGKILL after ``grace`` seconds."""
        if self._proc.returncode is not None:
            return
        try:
            self._proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Worker %s ignored SIGTERM, killing", self.name)
            try:
                self._proc.kill()
            except ProcessLookupError:
                return
            await self._proc.wait()


class ContainerRuntime:
    """Builds worker specs for namespaces and spawns them as containers."""

    def __init__(self, config: SwitchboardConfig, project_root: Path | None = None):
        self.config = config
        self.project_root = Path(project_root or os.getcwd())

    @property
    def runtime_bin(self) -> str:
        return resolve_runtime_bin(self.config.worker.runtime_bin)

    def namespace_ipc_dir(self, folder: str) -> Path:
        return self.config.ipc_dir / folder

    def build_mounts(self, namespace: Namespace, privileged: bool) -> list[VolumeMount]:
        mounts: list[VolumeMount] = []
        group_dir = self.config.groups_dir / namespace.folder
        group_dir.mkdir(parents=True, exist_ok=True)

        if privileged:
            mounts.append(VolumeMount(self.project_root, "/workspace/project"))
            mounts.append(VolumeMount(group_dir, "/workspace/group"))
        else:
            mounts.append(VolumeMount(group_dir, "/workspace/group"))
            global_dir = self.config.groups_dir / "global"
            if global_dir.exists():
                mounts.append(VolumeMount(global_dir, "/workspace/global", readonly=True))

        sessions_dir = self.config.data_dir / "sessions" / namespace.folder / ".claude"
        sessions_dir.mkdir(parents=True, exist_ok=True)
        mounts.append(VolumeMount(sessions_dir, f"{WORKER_HOME}/.claude"))

        ipc_dir = self.namespace_ipc_dir(namespace.folder)
        (ipc_dir / "messages").mkdir(parents=True, exist_ok=True)
        (ipc_dir / "tasks").mkdir(parents=True, exist_ok=True)
        mounts.append(VolumeMount(ipc_dir, "/workspace/ipc"))

        env_dir = self._write_env_file()
        if env_dir:
            mounts.append(VolumeMount(env_dir, "/workspace/env-dir", readonly=True))

        return mounts

    def _write_env_file(self) -> Path | None:
        """Write only allow-listed credentials into a file the worker can read."""
        lines = [
            f"{name}={os.environ[name]}"
            for name in self.config.worker.env_passthrough
            if os.environ.get(name)
        ]
        if not lines:
            return None
        env_dir = self.config.data_dir / "env"
        env_dir.mkdir(parents=True, exist_ok=True)
        env_file = env_dir / "env"
        env_file.write_text("\n".join(lines) + "\n")
        env_file.chmod(0o600)
        return env_dir

    def build_spec(
        self,
        namespace: Namespace,
        *,
        privileged: bool,
        persistent: bool = False,
        name: str | None = None,
    ) -> WorkerSpec:
        prefix = self.config.worker.name_prefix
        if name is None:
            suffix = "persistent" if persistent else uuid.uuid4().hex[:8]
            name = f"{prefix}-{namespace.folder}-{suffix}"
        env = {
            "HOME": WORKER_HOME,
            "SWITCHBOARD_NAMESPACE": namespace.folder,
            "TZ": self.config.scheduler.timezone,
        }
        if privileged:
            env["SWITCHBOARD_PRIVILEGED"] = "1"
        if persistent:
            env["SWITCHBOARD_PERSISTENT"] = "1"
        return WorkerSpec(
            name=name,
            mounts=self.build_mounts(namespace, privileged),
            env=env,
            persistent=persistent,
        )

    def build_args(self, spec: WorkerSpec) -> list[str]:
        args = ["run", "-i", "--rm", "--name", spec.name]

        # Run as host UID/GID so mounted files stay owned by the host user.
        uid = os.getuid() if hasattr(os, "getuid") else 0
        gid = os.getgid() if hasattr(os, "getgid") else 0
        if uid and gid:
            args.extend(["--user", f"{uid}:{gid}"])

        for key, value in spec.env.items():
            args.extend(["-e", f"{key}={value}"])

        for mount in spec.mounts:
            args.extend(["-v", mount.to_arg()])

        args.append(self.config.worker.image)
        return args

    async def spawn(self, spec: WorkerSpec) -> WorkerProcess:
        """Start a worker container and begin reading its output."""
        cmd = [self.runtime_bin, *self.build_args(spec)]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        worker = WorkerProcess(spec.name, proc)
        worker.start()
        logger.info("Spawned worker %s (pid=%s, persistent=%s)", spec.name, proc.pid, spec.persistent)
        return worker

    async def stop_container(self, name: str) -> None:
        """Best-effort stop by container name; the CLI client may already be gone."""
        try:
            result = await _run_container_cmd(self.runtime_bin, "stop", "-t", "1", name, timeout=15)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Failed to stop container %s: %s", name, e)
            return
        if result["exit_code"] != 0:
            logger.debug("Container %s stop: %s", name, result["stderr"])

    async def cleanup_stale(self) -> int:
        """Remove stopped containers left over from a previous run."""
        prefix = self.config.worker.name_prefix
        result = await _run_container_cmd(
            self.runtime_bin,
            "ps", "-a", "--filter", f"name={prefix}-", "--format", "{{.Names}}",
            timeout=15,
        )
        if result["exit_code"] != 0:
            logger.warning("Could not list stale containers: %s", result["stderr"])
            return 0
        stale = [n.strip() for n in result["stdout"].splitlines() if n.strip().startswith(f"{prefix}-")]
        if stale:
            await _run_container_cmd(self.runtime_bin, "rm", "-f", *stale, timeout=60)
            logger.info("Cleaned up %d stale containers", len(stale))
        return len(stale)
