"""Request router: merge queue for inbound events and the mailbox command handler.

Inbound events are keyed by conversation. A new event arriving within the
merge window of the batch in flight for the same key cancels that batch (and
any subagents reporting to the key) and restarts processing with the merged
batch. Only the newest batch for a key can ever deliver a response.

Everything the router wants done on the chat platform is emitted onto the
action channel; it never talks to the platform directly.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from switchboard.actions import (
    ActionChannel,
    RegisterNamespace,
    SendMessage,
    SubagentResult,
    TypingStart,
    TypingStop,
    UpdateSession,
)
from switchboard.cancellation import SHUTDOWN, CancelToken
from switchboard.config import SwitchboardConfig
from switchboard.errors import (
    AuthorizationViolation,
    ConcurrencyLimitExceeded,
    RequestCancelled,
    SchedulingSpecError,
    SwitchboardError,
)
from switchboard.models import (
    PROVENANCE_ASSISTANT,
    PROVENANCE_SUBAGENT,
    InboundEvent,
    Namespace,
    ScheduledTask,
    new_request_id,
    to_iso,
    utc_now,
    utc_now_iso,
)
from switchboard.prompts import (
    render_messages,
    render_scheduled_prompt,
    render_subagent_result,
    render_subagent_task,
    select_recent_context,
)
from switchboard.protocol import (
    CancelTaskCommand,
    MailboxEnvelope,
    PauseTaskCommand,
    RefreshSnapshotCommand,
    RegisterNamespaceCommand,
    ResumeTaskCommand,
    ScheduleTaskCommand,
    SendMessageCommand,
    SpawnSubagentCommand,
    WorkerRequest,
    WorkerResponse,
)
from switchboard.scheduler import new_task

logger = logging.getLogger(__name__)

FAILURE_NOTICE = "Sorry, I couldn't process that. Please try again."

_DEFAULT_SESSION = object()


def _clears_typing(cancel: CancelToken) -> bool:
    # A superseded batch leaves the indicator to its successor.
    return not cancel.cancelled or cancel.reason == SHUTDOWN


@dataclass
class ActiveRequest:
    """The one batch per conversation that may still deliver a response."""

    conversation_key: str
    namespace: Namespace
    events: list[InboundEvent]
    cancel: CancelToken
    started_at: float
    task: asyncio.Task | None = None


@dataclass
class SubagentHandle:
    id: str
    owner_conversation_key: str
    task_text: str
    cancel: CancelToken = field(default_factory=CancelToken)
    task: asyncio.Task | None = None


class Router:
    def __init__(
        self,
        config: SwitchboardConfig,
        store,
        registry,
        pool,
        actions: ActionChannel,
        *,
        manager=None,
        mailbox=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.pool = pool
        self.actions = actions
        self.manager = manager
        self.mailbox = mailbox
        self._clock = clock
        self._active: dict[str, ActiveRequest] = {}
        self._subagents: dict[str, SubagentHandle] = {}
        self._command_handlers = {
            "message": self._cmd_message,
            "schedule_task": self._cmd_schedule_task,
            "pause_task": self._cmd_pause_task,
            "resume_task": self._cmd_resume_task,
            "cancel_task": self._cmd_cancel_task,
            "register_namespace": self._cmd_register_namespace,
            "spawn_subagent": self._cmd_spawn_subagent,
            "refresh_snapshot": self._cmd_refresh_snapshot,
        }

    @property
    def assistant_name(self) -> str:
        return self.config.router.assistant_name

    @property
    def merge_window(self) -> float:
        return self.config.router.merge_window_seconds

    def active_request(self, conversation_key: str) -> ActiveRequest | None:
        return self._active.get(conversation_key)

    @property
    def active_subagent_count(self) -> int:
        return len(self._subagents)

    # --- Inbound events ---

    def _trigger_matches(self, namespace: Namespace, content: str) -> bool:
        if namespace.trigger:
            pattern = rf"^{re.escape(namespace.trigger)}\b"
        else:
            pattern = self.config.router.trigger_pattern
        return re.search(pattern, content.strip(), re.IGNORECASE) is not None

    def handle_inbound_event(self, event: InboundEvent) -> ActiveRequest | None:
        """Admit an event and start (or restart) processing for its conversation.

        Runs entirely within one loop turn: cancelling the superseded batch and
        installing its replacement cannot interleave with another event.
        """
        key = event.conversation_key
        namespace = self.registry.get(key)
        if namespace is None:
            logger.debug("Ignoring event for unregistered conversation %s", key)
            return None
        if not self.registry.is_privileged(namespace.folder) and not self._trigger_matches(namespace, event.content):
            return None

        now = self._clock()
        existing = self._active.get(key)
        previous = existing.task if existing else None
        if existing and now - existing.started_at < self.merge_window:
            logger.info(
                "Merging event %s into in-flight batch for %s (%d events)",
                event.id, key, len(existing.events) + 1,
            )
            existing.cancel.cancel("superseded")
            self.cancel_subagents_for(key)
            events = [*existing.events, event]
        else:
            events = [event]

        request = ActiveRequest(
            conversation_key=key,
            namespace=namespace,
            events=events,
            cancel=CancelToken(),
            started_at=now,
        )
        self._active[key] = request
        request.task = asyncio.create_task(
            self._process_batch(request, previous), name=f"batch-{namespace.folder}"
        )
        return request

    async def _process_batch(self, request: ActiveRequest, previous: asyncio.Task | None) -> None:
        key = request.conversation_key
        namespace = request.namespace
        typing = False
        try:
            # Strict per-key ordering: never overtake the batch before us.
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            if request.cancel.cancelled:
                return

            since = self.store.get_last_agent_timestamp(key)
            history = self.store.get_messages_since(key, since)
            if not history:
                logger.debug("Nothing unanswered on %s since %s", key, since)
                return
            prompt = render_messages(history)
            self.write_snapshots(namespace)

            self.actions.emit(TypingStart(key))
            typing = True
            try:
                response = await self.dispatch(namespace, prompt, key, request.cancel)
            except RequestCancelled:
                return
            except Exception as e:
                logger.exception("Processing failed for %s: %s", key, e)
                if not request.cancel.cancelled:
                    self.actions.emit(SendMessage(key, FAILURE_NOTICE))
                return

            if request.cancel.cancelled:
                logger.info("Dropping result for superseded batch on %s", key)
                return
            if response.new_session_id:
                self._update_session(namespace.folder, response.new_session_id)
            if not response.ok:
                logger.error("Worker error for %s: %s", key, response.error)
                self.actions.emit(SendMessage(key, FAILURE_NOTICE))
                return

            self.store.set_last_agent_timestamp(key, max(e.timestamp for e in history))
            if response.result:
                self._deliver(key, response.result)
        finally:
            if self._active.get(key) is request:
                del self._active[key]
            if typing and _clears_typing(request.cancel):
                self.actions.emit(TypingStop(key))

    def _deliver(self, conversation_key: str, text: str) -> None:
        text = f"{self.assistant_name}: {text}"
        self.store.store_message(InboundEvent(
            id=new_request_id("reply"),
            conversation_key=conversation_key,
            sender="assistant",
            sender_name=self.assistant_name,
            content=text,
            timestamp=utc_now_iso(),
            provenance=PROVENANCE_ASSISTANT,
        ))
        self.actions.emit(SendMessage(conversation_key, text))

    def _update_session(self, folder: str, session_id: str) -> None:
        self.store.set_session(folder, session_id)
        self.actions.emit(UpdateSession(folder, session_id))

    async def dispatch(
        self,
        namespace: Namespace,
        prompt: str,
        conversation_key: str,
        cancel: CancelToken | None = None,
        *,
        is_scheduled: bool = False,
        session_id=_DEFAULT_SESSION,
    ) -> WorkerResponse:
        """Persistent worker for the privileged namespace, with one ephemeral fallback."""
        if session_id is _DEFAULT_SESSION:
            session_id = self.store.get_session(namespace.folder)
        privileged = self.registry.is_privileged(namespace.folder)

        if privileged and self.manager is not None and not self.manager.fallback_only:
            try:
                return await self.manager.query(
                    prompt, session_id, conversation_key, is_scheduled=is_scheduled, cancel=cancel
                )
            except RequestCancelled:
                raise
            except Exception as e:
                logger.warning("Persistent worker failed for %s (%s); falling back to ephemeral", conversation_key, e)

        request = WorkerRequest(
            request_id=new_request_id(),
            command="query",
            prompt=prompt,
            session_id=session_id,
            namespace=namespace.folder,
            conversation_key=conversation_key,
            privileged=privileged,
            is_scheduled=is_scheduled,
        )
        return await self.pool.run(request, namespace, cancel)

    # --- Scheduled tasks ---

    async def run_scheduled_task(self, task: ScheduledTask) -> WorkerResponse:
        namespace = self.registry.by_folder(task.owner_namespace)
        if namespace is None:
            raise SwitchboardError(f"namespace {task.owner_namespace} is not registered")
        shared = task.context_mode == "shared"
        session_id = self.store.get_session(namespace.folder) if shared else None
        self.write_snapshots(namespace)
        request = WorkerRequest(
            request_id=new_request_id("task"),
            command="query",
            prompt=render_scheduled_prompt(task.prompt, task.id),
            session_id=session_id,
            namespace=namespace.folder,
            conversation_key=task.conversation_key,
            privileged=self.registry.is_privileged(namespace.folder),
            is_scheduled=True,
        )
        response = await self.pool.run(request, namespace)
        if shared and response.ok and response.new_session_id:
            self._update_session(namespace.folder, response.new_session_id)
        return response

    # --- Snapshots ---

    def write_snapshots(self, namespace: Namespace) -> None:
        if self.mailbox is None:
            return
        privileged = self.registry.is_privileged(namespace.folder)
        tasks = self.store.list_tasks() if privileged else self.store.list_tasks(namespace.folder)
        try:
            self.mailbox.write_tasks_snapshot(namespace.folder, tasks)
            if privileged:
                self.mailbox.write_namespaces_snapshot(namespace.folder, self.registry.all())
        except OSError as e:
            logger.warning("Failed to write snapshots for %s: %s", namespace.folder, e)

    # --- Mailbox commands ---

    async def handle_mailbox_command(self, envelope: MailboxEnvelope) -> None:
        """Authorize and apply one mailbox command.

        Authorization failures are logged and dropped; nothing is reported
        back to the offending namespace.
        """
        handler = self._command_handlers[envelope.type]
        try:
            await handler(envelope.source_namespace, envelope.payload)
        except AuthorizationViolation as e:
            logger.warning("Unauthorized %s from %s blocked: %s", envelope.type, envelope.source_namespace, e)

    async def _cmd_message(self, source: str, cmd: SendMessageCommand) -> None:
        target = self.registry.authorize_conversation(source, cmd.conversation_key)
        self._deliver(target.conversation_key, cmd.text)
        logger.info("Mailbox message from %s sent to %s", source, target.folder)

    async def _cmd_schedule_task(self, source: str, cmd: ScheduleTaskCommand) -> None:
        target = self.registry.authorize_folder(source, cmd.target_namespace or source)
        try:
            task = new_task(
                owner_namespace=target.folder,
                conversation_key=target.conversation_key,
                prompt=cmd.prompt,
                schedule_type=cmd.schedule_type,
                schedule_value=cmd.schedule_value,
                context_mode=cmd.context_mode,
                timezone=self.config.scheduler.timezone,
            )
        except SchedulingSpecError as e:
            logger.warning("Rejected schedule from %s: %s", source, e)
            origin = self.registry.by_folder(source)
            if origin:
                self._deliver(origin.conversation_key, f"Could not schedule task: {e}")
            return
        self.store.create_task(task)
        logger.info("Task %s scheduled for %s (%s %s)", task.id, target.folder, task.schedule_type, task.schedule_value)

    def _owned_task(self, source: str, task_id: str) -> ScheduledTask | None:
        task = self.store.get_task(task_id)
        if task is None:
            logger.warning("Task %s not found (requested by %s)", task_id, source)
            return None
        self.registry.authorize_owner(source, task.owner_namespace)
        return task

    async def _cmd_pause_task(self, source: str, cmd: PauseTaskCommand) -> None:
        task = self._owned_task(source, cmd.task_id)
        if task and task.status == "active":
            self.store.update_task(task.id, status="paused")
            logger.info("Task %s paused by %s", task.id, source)

    async def _cmd_resume_task(self, source: str, cmd: ResumeTaskCommand) -> None:
        task = self._owned_task(source, cmd.task_id)
        if task and task.status == "paused":
            self.store.update_task(task.id, status="active")
            logger.info("Task %s resumed by %s", task.id, source)

    async def _cmd_cancel_task(self, source: str, cmd: CancelTaskCommand) -> None:
        task = self._owned_task(source, cmd.task_id)
        if task:
            self.store.delete_task(task.id)
            logger.info("Task %s cancelled by %s", task.id, source)

    async def _cmd_register_namespace(self, source: str, cmd: RegisterNamespaceCommand) -> None:
        self.registry.require_privileged(source, "register_namespace")
        namespace = Namespace(
            conversation_key=cmd.conversation_key,
            name=cmd.name,
            folder=cmd.folder,
            trigger=cmd.trigger,
        )
        try:
            self.registry.register(namespace)
        except ValueError as e:
            logger.warning("Rejected namespace registration from %s: %s", source, e)
            return
        if self.mailbox is not None:
            self.mailbox.ensure_namespace(namespace.folder)
        self.actions.emit(RegisterNamespace(namespace))

    async def _cmd_refresh_snapshot(self, source: str, cmd: RefreshSnapshotCommand) -> None:
        self.registry.require_privileged(source, "refresh_snapshot")
        namespace = self.registry.by_folder(source)
        if namespace:
            self.write_snapshots(namespace)

    # --- Subagents ---

    async def _cmd_spawn_subagent(self, source: str, cmd: SpawnSubagentCommand) -> None:
        self.registry.require_privileged(source, "spawn_subagent")
        target = self.registry.authorize_conversation(source, cmd.conversation_key)
        key = target.conversation_key

        try:
            handle = self._admit_subagent(key, cmd.task)
        except ConcurrencyLimitExceeded as e:
            logger.warning("Subagent rejected for %s: %s", key, e)
            self._deliver(key, str(e))
            return
        handle.task = asyncio.create_task(self._run_subagent(handle, target, cmd), name=handle.id)
        logger.info(
            "Subagent %s started for %s (%d/%d)",
            handle.id, key, len(self._subagents), self.config.subagent.max_concurrent,
        )

    def _admit_subagent(self, key: str, task_text: str) -> SubagentHandle:
        """Check the limit and insert the handle without an await in between."""
        limit = self.config.subagent.max_concurrent
        if len(self._subagents) >= limit:
            raise ConcurrencyLimitExceeded(
                f"Too many concurrent subagents ({limit} running). Please wait for one to finish."
            )
        handle = SubagentHandle(id=new_request_id("sub"), owner_conversation_key=key, task_text=task_text)
        self._subagents[handle.id] = handle
        return handle

    async def _run_subagent(self, handle: SubagentHandle, target: Namespace, cmd: SpawnSubagentCommand) -> None:
        key = target.conversation_key
        self.actions.emit(TypingStart(key))
        try:
            context = None
            if cmd.include_context:
                minutes = self.config.subagent.context_minutes
                since = to_iso(utc_now() - timedelta(minutes=minutes))
                context = select_recent_context(
                    self.store.get_messages_since(key, since),
                    limit=self.config.subagent.context_messages,
                    minutes=minutes,
                )
            request = WorkerRequest(
                request_id=handle.id,
                command="query",
                prompt=render_subagent_task(cmd.task, context),
                session_id=self.store.get_session(target.folder),
                namespace=target.folder,
                conversation_key=key,
                privileged=self.registry.is_privileged(target.folder),
            )
            try:
                response = await self.pool.run(request, target, handle.cancel)
            except RequestCancelled:
                logger.info("Subagent %s cancelled (%s)", handle.id, handle.cancel.reason)
                return
            except Exception as e:
                logger.exception("Subagent %s failed: %s", handle.id, e)
                response = None

            if handle.cancel.cancelled:
                return
            if response is None or not response.ok:
                if response is not None:
                    logger.error("Subagent %s returned an error: %s", handle.id, response.error)
                self._deliver(key, FAILURE_NOTICE)
                return
            if response.new_session_id:
                self._update_session(target.folder, response.new_session_id)
            if response.result:
                # Stored for the next prompt; the subagent provenance keeps it
                # out of the inbound event stream.
                self.store.store_message(InboundEvent(
                    id=handle.id,
                    conversation_key=key,
                    sender="subagent",
                    sender_name=f"{self.assistant_name} (subagent)",
                    content=render_subagent_result(cmd.task, response.result),
                    timestamp=utc_now_iso(),
                    provenance=PROVENANCE_SUBAGENT,
                ))
                self.actions.emit(SubagentResult(key, response.result, cmd.task))
        finally:
            self._subagents.pop(handle.id, None)
            if _clears_typing(handle.cancel):
                self.actions.emit(TypingStop(key))

    def cancel_subagents_for(self, conversation_key: str) -> int:
        cancelled = 0
        for handle in list(self._subagents.values()):
            if handle.owner_conversation_key == conversation_key and not handle.cancel.cancelled:
                handle.cancel.cancel("owner conversation superseded")
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d subagents for %s", cancelled, conversation_key)
        return cancelled

    # --- Shutdown ---

    async def shutdown(self) -> None:
        tasks = []
        for request in list(self._active.values()):
            request.cancel.cancel(SHUTDOWN)
            if request.task:
                tasks.append(request.task)
        for handle in list(self._subagents.values()):
            handle.cancel.cancel(SHUTDOWN)
            if handle.task:
                tasks.append(handle.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
