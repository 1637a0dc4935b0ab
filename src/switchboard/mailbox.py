"""Filesystem mailbox: per-namespace directories polled for worker commands.

Layout under the ipc directory::

    <namespace>/messages/*.json   outbound chat messages
    <namespace>/tasks/*.json      task and control commands
    <namespace>/current_tasks.json, available_namespaces.json   snapshots
    errors/<namespace>-<file>     quarantined files

Workers write a temp file and rename it into place, so only complete
``*.json`` files are picked up. The directory a file was found in is the
authoritative source namespace.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Awaitable, Callable

from switchboard.errors import ProtocolParseError
from switchboard.models import Namespace, ScheduledTask, is_valid_folder
from switchboard.protocol import MailboxEnvelope, parse_envelope_text
from switchboard.ticker import Ticker

logger = logging.getLogger(__name__)

ERRORS_DIR = "errors"
SUBQUEUES = ("messages", "tasks")
TASKS_SNAPSHOT = "current_tasks.json"
NAMESPACES_SNAPSHOT = "available_namespaces.json"


def write_json_atomic(path: Path, data) -> None:
    """Write JSON to a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class Mailbox:
    """Polls every namespace directory and hands validated envelopes to a handler."""

    def __init__(
        self,
        ipc_dir: Path,
        handler: Callable[[MailboxEnvelope], Awaitable[None]],
        *,
        poll_interval: float = 1.0,
    ):
        self.ipc_dir = Path(ipc_dir)
        self.handler = handler
        self._ticker = Ticker(poll_interval, self.poll_once, name="mailbox")
        self.processed = 0
        self.quarantined = 0

    @property
    def errors_dir(self) -> Path:
        return self.ipc_dir / ERRORS_DIR

    def namespace_dir(self, folder: str) -> Path:
        return self.ipc_dir / folder

    def ensure_namespace(self, folder: str) -> Path:
        ns_dir = self.namespace_dir(folder)
        for sub in SUBQUEUES:
            (ns_dir / sub).mkdir(parents=True, exist_ok=True)
        return ns_dir

    def start(self) -> None:
        self.ipc_dir.mkdir(parents=True, exist_ok=True)
        self._ticker.start()
        logger.info("Mailbox watcher started on %s", self.ipc_dir)

    async def stop(self) -> None:
        await self._ticker.stop()

    def _namespace_folders(self) -> list[str]:
        if not self.ipc_dir.exists():
            return []
        return sorted(
            p.name for p in self.ipc_dir.iterdir()
            if p.is_dir() and p.name != ERRORS_DIR and is_valid_folder(p.name)
        )

    async def poll_once(self) -> int:
        """Process every pending file once. Returns the number handled successfully."""
        handled = 0
        for folder in self._namespace_folders():
            for sub in SUBQUEUES:
                queue_dir = self.namespace_dir(folder) / sub
                if not queue_dir.is_dir():
                    continue
                for path in sorted(queue_dir.glob("*.json")):
                    if await self._process_file(path, folder, sub):
                        handled += 1
        return handled

    async def _process_file(self, path: Path, folder: str, subqueue: str) -> bool:
        try:
            envelope = parse_envelope_text(path.read_text(), folder)
            if (subqueue == "messages") != (envelope.type == "message"):
                raise ProtocolParseError(f"{envelope.type} not accepted in {subqueue}/")
            await self.handler(envelope)
        except ProtocolParseError as e:
            logger.warning("Malformed mailbox file %s from %s: %s", path.name, folder, e)
            self._quarantine(path, folder)
            return False
        except FileNotFoundError:
            return False
        except Exception as e:
            logger.exception("Error handling mailbox file %s from %s: %s", path.name, folder, e)
            self._quarantine(path, folder)
            return False

        path.unlink(missing_ok=True)
        self.processed += 1
        return True

    def _quarantine(self, path: Path, folder: str) -> None:
        self.errors_dir.mkdir(parents=True, exist_ok=True)
        target = self.errors_dir / f"{folder}-{path.name}"
        try:
            os.replace(path, target)
            self.quarantined += 1
        except OSError as e:
            logger.error("Failed to quarantine %s: %s", path, e)

    # --- Snapshots ---

    def write_tasks_snapshot(self, folder: str, tasks: list[ScheduledTask]) -> None:
        data = [
            {
                "id": t.id,
                "owner_namespace": t.owner_namespace,
                "prompt": t.prompt,
                "schedule_type": t.schedule_type,
                "schedule_value": t.schedule_value,
                "context_mode": t.context_mode,
                "status": t.status,
                "next_run": t.next_run,
            }
            for t in tasks
        ]
        write_json_atomic(self.ensure_namespace(folder) / TASKS_SNAPSHOT, data)

    def write_namespaces_snapshot(self, folder: str, namespaces: list[Namespace]) -> None:
        write_json_atomic(
            self.ensure_namespace(folder) / NAMESPACES_SNAPSHOT,
            [asdict(n) for n in namespaces],
        )
