"""Switchboard daemon: orchestrator plus the Slack adapter in one process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from switchboard.actions import Action
from switchboard.config import SwitchboardConfig, ensure_switchboard_home
from switchboard.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class SwitchboardDaemon:
    """Long-running daemon: orchestrator, action consumer, optional Slack."""

    def __init__(self, project_path: str | None = None, config: SwitchboardConfig | None = None):
        self.config = config or SwitchboardConfig.load()
        ensure_switchboard_home(self.config)
        self.orchestrator = Orchestrator(self.config, project_root=project_path)
        self._slack = None
        self._slack_task: asyncio.Task | None = None
        self._consumer_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start all daemon services and block until stopped."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_stop)

        await self.orchestrator.init()

        if self.config.slack.enabled and self.config.slack.bot_token:
            try:
                from switchboard.slack_adapter import SlackAdapter

                self._slack = SlackAdapter(
                    bot_token=self.config.slack.bot_token,
                    app_token=self.config.slack.app_token,
                    orchestrator=self.orchestrator,
                )
                self._slack_task = asyncio.create_task(self._slack.start(), name="switchboard-slack")
                self._slack_task.add_done_callback(self._on_slack_task_done)
                logger.info("Slack adapter start requested")
            except ImportError:
                logger.warning("slack-bolt not installed, skipping Slack integration")
            except Exception as e:
                logger.exception("Slack adapter failed to start: %s", e)

        handler = self._slack.execute if self._slack else self._log_action
        self._consumer_task = asyncio.create_task(
            self.orchestrator.actions.consume(handler), name="switchboard-actions"
        )

        logger.info("Switchboard daemon started")
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Gracefully stop all services."""
        if self._stop_event.is_set():
            return
        logger.info("Switchboard daemon stopping")

        try:
            await self.orchestrator.shutdown()
        except Exception as e:
            logger.exception("Orchestrator shutdown error: %s", e)

        if self._consumer_task:
            self._consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer_task
            self._consumer_task = None

        if self._slack:
            try:
                await self._slack.stop()
            except Exception as e:
                logger.exception("Slack adapter stop error: %s", e)
        if self._slack_task:
            self._slack_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._slack_task
            self._slack_task = None

        self._stop_event.set()

    def _request_stop(self) -> None:
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop(), name="daemon-stop")

    async def _log_action(self, action: Action) -> None:
        logger.info("Action (no chat platform attached): %s", action)

    def _on_slack_task_done(self, task: asyncio.Task) -> None:
        """Surface Slack task failures and unexpected exits."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Slack adapter task crashed: %s", exc)
        else:
            logger.info("Slack adapter task finished")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def main():
    """Entry point for python -m switchboard.daemon."""
    configure_logging()
    project_path = sys.argv[1] if len(sys.argv) > 1 else None
    daemon = SwitchboardDaemon(project_path=project_path)
    asyncio.run(daemon.start())


if __name__ == "__main__":
    main()
