"""Switchboard configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

SWITCHBOARD_HOME = Path(os.environ.get("SWITCHBOARD_HOME", Path.home() / ".switchboard"))


@dataclass
class RouterConfig:
    """Inbound routing and merge queue."""

    assistant_name: str = "Andy"
    trigger_pattern: str = r"^@Andy\b"
    merge_window_seconds: float = 3.0
    message_poll_interval: float = 2.0
    privileged_folder: str = "main"


@dataclass
class WorkerConfig:
    """Container workers: persistent and ephemeral."""

    runtime_bin: str = "docker"
    image: str = "switchboard-agent:latest"
    name_prefix: str = "switchboard"
    enable_persistent: bool = True
    request_timeout_seconds: float = 300.0
    ephemeral_timeout_seconds: float = 600.0
    health_check_interval: float = 30.0
    max_restart_attempts: int = 3
    restart_backoff_base: float = 1.0  # delay = base * 2^attempts
    shutdown_grace_seconds: float = 1.0
    env_passthrough: list[str] = field(
        default_factory=lambda: ["ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN"]
    )


@dataclass
class MailboxConfig:
    """Filesystem mailbox polling."""

    poll_interval: float = 1.0


@dataclass
class SchedulerConfig:
    """Scheduled task polling."""

    poll_interval: float = 60.0
    timezone: str = "UTC"


@dataclass
class SubagentConfig:
    """Subagent admission control."""

    max_concurrent: int = 3
    context_messages: int = 10
    context_minutes: int = 30


@dataclass
class SlackConfig:
    """Slack integration settings."""

    bot_token: str = ""
    app_token: str = ""
    enabled: bool = False


SECTIONS = ("router", "worker", "mailbox", "scheduler", "subagent", "slack")


@dataclass
class SwitchboardConfig:
    """Top-level Switchboard configuration."""

    router: RouterConfig = field(default_factory=RouterConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    mailbox: MailboxConfig = field(default_factory=MailboxConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    subagent: SubagentConfig = field(default_factory=SubagentConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    home: Path = field(default_factory=lambda: SWITCHBOARD_HOME)

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    @property
    def groups_dir(self) -> Path:
        return self.home / "groups"

    @property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "switchboard.db"

    @property
    def config_path(self) -> Path:
        return self.home / "config.json"

    @classmethod
    def load(cls, home: Path | None = None) -> "SwitchboardConfig":
        """Load config from disk or return defaults.

        Env vars override file config.
        """
        config = cls(home=Path(home) if home else SWITCHBOARD_HOME)
        if config.config_path.exists():
            data = json.loads(config.config_path.read_text())
            for section in SECTIONS:
                for k, v in (data.get(section) or {}).items():
                    target = getattr(config, section)
                    if hasattr(target, k):
                        setattr(target, k, v)

        tz = os.environ.get("TZ")
        if tz:
            config.scheduler.timezone = tz

        assistant = os.environ.get("SWITCHBOARD_ASSISTANT_NAME")
        if assistant:
            config.router.assistant_name = assistant
            config.router.trigger_pattern = rf"^@{assistant}\b"

        float_overrides = {
            "SWITCHBOARD_MERGE_WINDOW_SECS": (config.router, "merge_window_seconds"),
            "SWITCHBOARD_REQUEST_TIMEOUT_SECS": (config.worker, "request_timeout_seconds"),
            "SWITCHBOARD_HEALTH_INTERVAL_SECS": (config.worker, "health_check_interval"),
            "SWITCHBOARD_MAILBOX_POLL_SECS": (config.mailbox, "poll_interval"),
            "SWITCHBOARD_SCHEDULER_POLL_SECS": (config.scheduler, "poll_interval"),
        }
        for env_name, (target, attr) in float_overrides.items():
            raw = os.environ.get(env_name, "").strip()
            if raw:
                setattr(target, attr, float(raw))

        max_restarts = os.environ.get("SWITCHBOARD_MAX_RESTARTS", "").strip()
        if max_restarts:
            config.worker.max_restart_attempts = int(max_restarts)
        max_subagents = os.environ.get("SWITCHBOARD_MAX_SUBAGENTS", "").strip()
        if max_subagents:
            config.subagent.max_concurrent = int(max_subagents)

        persistent = os.environ.get("SWITCHBOARD_ENABLE_PERSISTENT")
        if persistent is not None:
            config.worker.enable_persistent = persistent == "1"

        container_bin = os.environ.get("SWITCHBOARD_CONTAINER_BIN")
        if container_bin:
            config.worker.runtime_bin = container_bin
        image = os.environ.get("SWITCHBOARD_CONTAINER_IMAGE")
        if image:
            config.worker.image = image

        # Env var overrides for tokens
        slack_bot = os.environ.get("SWITCHBOARD_SLACK_BOT_TOKEN")
        slack_app = os.environ.get("SWITCHBOARD_SLACK_APP_TOKEN")
        if slack_bot:
            config.slack.bot_token = slack_bot
        if slack_app:
            config.slack.app_token = slack_app

        return config

    def save(self) -> None:
        """Persist config to disk."""
        self.home.mkdir(parents=True, exist_ok=True)
        data = {section: asdict(getattr(self, section)) for section in SECTIONS}
        self.config_path.write_text(json.dumps(data, indent=2))


def ensure_switchboard_home(config: SwitchboardConfig) -> None:
    """Create Switchboard home directory structure."""
    for path in (config.data_dir, config.groups_dir, config.ipc_dir, config.logs_dir):
        path.mkdir(parents=True, exist_ok=True)
