"""Orchestrator: builds every component once and owns their start/stop order."""

from __future__ import annotations

import logging
from pathlib import Path

from switchboard.actions import ActionChannel
from switchboard.config import SwitchboardConfig, ensure_switchboard_home
from switchboard.lifecycle import PersistentWorkerManager
from switchboard.mailbox import Mailbox
from switchboard.models import PROVENANCE_USER, InboundEvent, Namespace
from switchboard.pool import EphemeralPool
from switchboard.protocol import MailboxEnvelope
from switchboard.registry import NamespaceRegistry
from switchboard.router import Router
from switchboard.scheduler import Scheduler
from switchboard.store import Store
from switchboard.ticker import Ticker
from switchboard.worker import ContainerRuntime

logger = logging.getLogger(__name__)

LAST_TIMESTAMP_KEY = "last_timestamp"


class Orchestrator:
    """Single owner of all control-plane state for one process.

    Collaborators can be injected for tests; otherwise they are built from
    ``config``.
    """

    def __init__(
        self,
        config: SwitchboardConfig,
        *,
        store: Store | None = None,
        runtime=None,
        project_root: Path | None = None,
    ):
        self.config = config
        ensure_switchboard_home(config)
        self.store = store or Store(config.db_path)
        self.registry = NamespaceRegistry(self.store, config.router.privileged_folder)
        self.runtime = runtime or ContainerRuntime(config, project_root)
        self.pool = EphemeralPool(self.runtime, timeout=config.worker.ephemeral_timeout_seconds)
        self.actions = ActionChannel()
        self.mailbox = Mailbox(
            config.ipc_dir, self._on_mailbox, poll_interval=config.mailbox.poll_interval
        )
        self.manager: PersistentWorkerManager | None = None
        self.router = Router(
            config, self.store, self.registry, self.pool, self.actions, mailbox=self.mailbox
        )
        self.scheduler = Scheduler(
            self.store,
            self.router.run_scheduled_task,
            poll_interval=config.scheduler.poll_interval,
            timezone=config.scheduler.timezone,
        )
        self._message_ticker = Ticker(
            config.router.message_poll_interval, self.poll_messages, name="message-loop"
        )
        self._last_timestamp = ""
        self._started = False

    async def init(self) -> None:
        """Load state, start the persistent worker, and start every poll loop."""
        if self._started:
            return
        self.registry.load()
        self._last_timestamp = self.store.get_router_state(LAST_TIMESTAMP_KEY) or ""
        for namespace in self.registry.all():
            self.mailbox.ensure_namespace(namespace.folder)

        try:
            await self.runtime.cleanup_stale()
        except Exception as e:
            logger.warning("Stale container cleanup skipped: %s", e)

        privileged = self.registry.privileged()
        if privileged:
            await self._start_persistent(privileged)

        self.recover_pending()
        self.mailbox.start()
        self.scheduler.start()
        self._message_ticker.start()
        self._started = True
        logger.info(
            "Orchestrator started (%d namespaces, persistent=%s)",
            len(self.registry), self.manager is not None,
        )

    async def shutdown(self) -> None:
        logger.info("Orchestrator shutting down")
        await self._message_ticker.stop()
        await self.scheduler.stop()
        await self.mailbox.stop()
        await self.router.shutdown()
        if self.manager:
            await self.manager.shutdown()
        await self.pool.shutdown()
        self._started = False
        logger.info("Orchestrator stopped")

    async def _start_persistent(self, namespace: Namespace) -> None:
        if not self.config.worker.enable_persistent or self.manager is not None:
            return
        worker = self.config.worker
        self.manager = PersistentWorkerManager(
            namespace,
            self.runtime,
            request_timeout=worker.request_timeout_seconds,
            health_interval=worker.health_check_interval,
            max_restart_attempts=worker.max_restart_attempts,
            backoff_base=worker.restart_backoff_base,
            shutdown_grace=worker.shutdown_grace_seconds,
        )
        self.manager.on_fatal(
            lambda: logger.error("Namespace %s is now served by ephemeral workers only", namespace.folder)
        )
        self.router.manager = self.manager
        try:
            await self.manager.start()
        except Exception as e:
            # Queries fall back to ephemeral workers while the manager is stopped.
            logger.error("Persistent worker failed to start: %s", e)

    # --- Inbound ---

    def ingest_event(self, event: InboundEvent, chat_name: str | None = None) -> None:
        """Record an inbound chat message; the message loop picks it up."""
        self.store.store_chat_metadata(event.conversation_key, event.timestamp, chat_name)
        if event.conversation_key in self.registry:
            self.store.store_message(event)

    async def poll_messages(self) -> int:
        events = self.store.get_new_messages(self.registry.conversation_keys(), self._last_timestamp)
        for event in events:
            self._last_timestamp = max(self._last_timestamp, event.timestamp)
            self.router.handle_inbound_event(event)
        if events:
            self.store.set_router_state(LAST_TIMESTAMP_KEY, self._last_timestamp)
            logger.info("Dispatched %d new messages", len(events))
        return len(events)

    def recover_pending(self) -> int:
        """Re-admit user messages newer than each conversation's delivery watermark."""
        recovered = 0
        for namespace in self.registry.all():
            key = namespace.conversation_key
            since = self.store.get_last_agent_timestamp(key)
            pending = [
                e for e in self.store.get_messages_since(key, since)
                if e.provenance == PROVENANCE_USER
            ]
            for event in pending:
                if self.router.handle_inbound_event(event):
                    recovered += 1
        if recovered:
            logger.info("Recovered %d unprocessed messages", recovered)
        return recovered

    # --- Registration ---

    async def register_namespace(self, namespace: Namespace) -> Namespace:
        self.registry.register(namespace)
        self.mailbox.ensure_namespace(namespace.folder)
        if self._started and self.registry.is_privileged(namespace.folder):
            await self._start_persistent(namespace)
        return namespace

    async def _on_mailbox(self, envelope: MailboxEnvelope) -> None:
        await self.router.handle_mailbox_command(envelope)

    def status(self) -> dict:
        return {
            "namespaces": len(self.registry),
            "persistent_state": self.manager.state.value if self.manager else "disabled",
            "ephemeral_workers": self.pool.active_count,
            "subagents": self.router.active_subagent_count,
            "mailbox_processed": self.mailbox.processed,
            "mailbox_quarantined": self.mailbox.quarantined,
            "pending_actions": len(self.actions),
        }
