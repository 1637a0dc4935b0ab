"""Outbound action channel: the router's only way to touch the chat platform.

The core never calls platform I/O directly. It emits one of a closed set of
action variants onto an ``ActionChannel``; the platform adapter consumes the
channel and executes each action.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from switchboard.models import Namespace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendMessage:
    conversation_key: str
    text: str


@dataclass(frozen=True)
class UpdateSession:
    folder: str
    session_id: str


@dataclass(frozen=True)
class TypingStart:
    conversation_key: str


@dataclass(frozen=True)
class TypingStop:
    conversation_key: str


@dataclass(frozen=True)
class SubagentResult:
    conversation_key: str
    text: str
    task: str


@dataclass(frozen=True)
class RegisterNamespace:
    namespace: Namespace


Action = Union[SendMessage, UpdateSession, TypingStart, TypingStop, SubagentResult, RegisterNamespace]


class ActionChannel:
    """Unbounded FIFO of outbound actions with a single consumer."""

    def __init__(self):
        self._queue: asyncio.Queue[Action] = asyncio.Queue()

    def emit(self, action: Action) -> None:
        logger.debug("Action emitted: %s", type(action).__name__)
        self._queue.put_nowait(action)

    async def get(self) -> Action:
        return await self._queue.get()

    def drain(self) -> list[Action]:
        """Pop everything currently queued without waiting."""
        drained = []
        while True:
            try:
                drained.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return drained

    def __len__(self) -> int:
        return self._queue.qsize()

    async def consume(self, handler: Callable[[Action], Awaitable[None]]) -> None:
        """Feed actions to ``handler`` until cancelled.

        A failing action is logged and skipped; it never stops the consumer.
        """
        while True:
            action = await self._queue.get()
            try:
                await handler(action)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Action handler failed for %s: %s", type(action).__name__, e)
