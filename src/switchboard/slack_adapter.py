"""Slack adapter for Switchboard: Socket Mode in, action channel out.

Inbound channel messages are recorded through the orchestrator and picked up
by its message loop. Outbound, the adapter executes router actions:

- SendMessage / SubagentResult: posted in chunks under the Slack size limit
- TypingStart / TypingStop: an "eyes" reaction on the latest inbound message
- /switchboard-start: registers the first channel as the privileged namespace
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from switchboard.actions import (
    Action,
    RegisterNamespace,
    SendMessage,
    SubagentResult,
    TypingStart,
    TypingStop,
    UpdateSession,
)
from switchboard.models import InboundEvent, Namespace, to_iso

try:
    from slack_bolt.async_app import AsyncApp
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
    from slack_sdk.errors import SlackApiError
    from slack_sdk.web.async_client import AsyncWebClient

    HAS_SLACK = True
except ImportError:
    HAS_SLACK = False

logger = logging.getLogger(__name__)

KEY_PREFIX = "slack:"
# Slack rejects text above 40k chars and truncates long messages in clients.
MAX_MESSAGE_CHARS = 3900
TYPING_REACTION = "eyes"


def _require_slack():
    if not HAS_SLACK:
        raise ImportError(
            "slack-bolt and slack-sdk are required for Slack integration. "
            "Install with: pip install 'switchboard[slack]'"
        )


def conversation_key(channel: str) -> str:
    return f"{KEY_PREFIX}{channel}"


def channel_of(key: str) -> str:
    return key[len(KEY_PREFIX):] if key.startswith(KEY_PREFIX) else key


def slack_ts_to_iso(ts: str) -> str:
    return to_iso(datetime.fromtimestamp(float(ts), tz=timezone.utc))


def chunk_text(text: str, limit: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split ``text`` at newline boundaries into pieces of at most ``limit`` chars."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class SlackAdapter:
    """Slack bot using Socket Mode (no public URL needed)."""

    def __init__(self, bot_token: str, app_token: str, orchestrator):
        _require_slack()
        self._app_token = app_token
        self._orchestrator = orchestrator
        self._app = AsyncApp(token=bot_token)
        self._client = AsyncWebClient(token=bot_token)
        self._handler: AsyncSocketModeHandler | None = None
        self._user_names: dict[str, str] = {}
        self._last_inbound_ts: dict[str, str] = {}

        self._register_commands()
        self._register_events()

    @property
    def assistant_name(self) -> str:
        return self._orchestrator.config.router.assistant_name

    # --- Inbound ---

    def _register_commands(self):
        @self._app.command("/switchboard-start")
        async def handle_start(ack, respond, command):
            await ack()
            await respond(text=await self.bootstrap(command.get("channel_id", ""), command.get("channel_name", "")))

    def _register_events(self):
        @self._app.event("message")
        async def handle_message(event):
            await self.on_message(event)

        @self._app.event("app_mention")
        async def handle_mention(event):
            # Channel messages already arrive as "message" events.
            return

    async def bootstrap(self, channel: str, channel_name: str = "") -> str:
        registry = self._orchestrator.registry
        if registry.privileged() is not None:
            return "Switchboard is already set up. Ask in the main channel to register this one."
        namespace = Namespace(
            conversation_key=conversation_key(channel),
            name=channel_name or channel,
            folder=registry.privileged_folder,
            trigger=f"@{self.assistant_name}",
        )
        await self._orchestrator.register_namespace(namespace)
        logger.info("Registered %s as the privileged namespace", channel)
        return f"This channel is now the main {self.assistant_name} channel."

    async def on_message(self, event: dict) -> None:
        if event.get("bot_id") or event.get("subtype") not in (None, "file_share", "thread_broadcast"):
            return
        channel = event.get("channel")
        ts = event.get("ts")
        if not channel or not ts:
            return
        text = (event.get("text") or "").strip()
        files = [{"name": f.get("name", "file"), "mimetype": f.get("mimetype", "")} for f in event.get("files") or []]
        if not text and not files:
            return

        user = event.get("user", "")
        inbound = InboundEvent(
            id=ts,
            conversation_key=conversation_key(channel),
            sender=user,
            sender_name=await self._user_name(user),
            content=text,
            timestamp=slack_ts_to_iso(ts),
            message_type="file" if files and not text else "text",
            attachments=files,
        )
        self._last_inbound_ts[channel] = ts
        self._orchestrator.ingest_event(inbound)

    async def _user_name(self, user_id: str) -> str:
        if not user_id:
            return ""
        if user_id not in self._user_names:
            try:
                info = await self._client.users_info(user=user_id)
                profile = info["user"].get("profile") or {}
                self._user_names[user_id] = (
                    profile.get("display_name") or info["user"].get("real_name") or user_id
                )
            except SlackApiError as e:
                logger.debug("users_info failed for %s: %s", user_id, e)
                self._user_names[user_id] = user_id
        return self._user_names[user_id]

    # --- Outbound ---

    async def execute(self, action: Action) -> None:
        """Carry out one router action on Slack."""
        if isinstance(action, SendMessage):
            await self.send_message(action.conversation_key, action.text)
        elif isinstance(action, SubagentResult):
            await self.send_message(action.conversation_key, f"{self.assistant_name}: {action.text}")
        elif isinstance(action, TypingStart):
            await self._set_typing(action.conversation_key, True)
        elif isinstance(action, TypingStop):
            await self._set_typing(action.conversation_key, False)
        elif isinstance(action, UpdateSession):
            logger.debug("Session for %s is now %s", action.folder, action.session_id)
        elif isinstance(action, RegisterNamespace):
            logger.info("Namespace %s registered for %s", action.namespace.folder, action.namespace.conversation_key)
        else:
            logger.warning("Unhandled action %s", type(action).__name__)

    async def send_message(self, key: str, text: str) -> None:
        channel = channel_of(key)
        for chunk in chunk_text(text):
            await self._client.chat_postMessage(channel=channel, text=chunk)

    async def _set_typing(self, key: str, on: bool) -> None:
        channel = channel_of(key)
        ts = self._last_inbound_ts.get(channel)
        if not ts:
            return
        try:
            if on:
                await self._client.reactions_add(channel=channel, timestamp=ts, name=TYPING_REACTION)
            else:
                await self._client.reactions_remove(channel=channel, timestamp=ts, name=TYPING_REACTION)
        except SlackApiError as e:
            # already_reacted / no_reaction are expected after merges.
            logger.debug("Typing reaction update failed for %s: %s", channel, e)

    # --- Lifecycle ---

    async def start(self):
        """Start the Slack adapter in Socket Mode."""
        self._handler = AsyncSocketModeHandler(self._app, self._app_token)
        await self._handler.start_async()
        logger.info("Slack adapter started in Socket Mode")

    async def stop(self):
        """Stop the Slack adapter."""
        if self._handler:
            await self._handler.close_async()
            logger.info("Slack adapter stopped")
