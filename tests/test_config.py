"""Tests for switchboard.config: defaults, file config, env overrides."""

import json

from switchboard.config import SwitchboardConfig, ensure_switchboard_home

_ENV = (
    "TZ",
    "SWITCHBOARD_ASSISTANT_NAME",
    "SWITCHBOARD_MERGE_WINDOW_SECS",
    "SWITCHBOARD_MAX_SUBAGENTS",
    "SWITCHBOARD_ENABLE_PERSISTENT",
    "SWITCHBOARD_SLACK_BOT_TOKEN",
)


def _clear_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


class TestConfig:
    def test_defaults(self, tmp_path, monkeypatch):
        _clear_env(monkeypatch)
        config = SwitchboardConfig.load(tmp_path)
        assert config.router.merge_window_seconds == 3.0
        assert config.worker.max_restart_attempts == 3
        assert config.subagent.max_concurrent == 3
        assert config.db_path == tmp_path / "data" / "switchboard.db"

    def test_save_and_load(self, tmp_path, monkeypatch):
        _clear_env(monkeypatch)
        config = SwitchboardConfig(home=tmp_path)
        config.subagent.max_concurrent = 5
        config.scheduler.timezone = "Europe/Berlin"
        config.save()

        loaded = SwitchboardConfig.load(tmp_path)
        assert loaded.subagent.max_concurrent == 5
        assert loaded.scheduler.timezone == "Europe/Berlin"

    def test_unknown_keys_ignored(self, tmp_path, monkeypatch):
        _clear_env(monkeypatch)
        (tmp_path / "config.json").write_text(json.dumps({"router": {"bogus": 1}, "nosection": {}}))
        config = SwitchboardConfig.load(tmp_path)
        assert not hasattr(config.router, "bogus")

    def test_env_overrides(self, tmp_path, monkeypatch):
        _clear_env(monkeypatch)
        monkeypatch.setenv("TZ", "Asia/Tokyo")
        monkeypatch.setenv("SWITCHBOARD_ASSISTANT_NAME", "Jeeves")
        monkeypatch.setenv("SWITCHBOARD_MERGE_WINDOW_SECS", "1.5")
        monkeypatch.setenv("SWITCHBOARD_MAX_SUBAGENTS", "7")
        monkeypatch.setenv("SWITCHBOARD_ENABLE_PERSISTENT", "0")
        monkeypatch.setenv("SWITCHBOARD_SLACK_BOT_TOKEN", "xoxb-test")

        config = SwitchboardConfig.load(tmp_path)
        assert config.scheduler.timezone == "Asia/Tokyo"
        assert config.router.assistant_name == "Jeeves"
        assert config.router.trigger_pattern == r"^@Jeeves\b"
        assert config.router.merge_window_seconds == 1.5
        assert config.subagent.max_concurrent == 7
        assert config.worker.enable_persistent is False
        assert config.slack.bot_token == "xoxb-test"

    def test_ensure_home(self, tmp_path):
        config = SwitchboardConfig(home=tmp_path / "sb")
        ensure_switchboard_home(config)
        assert config.ipc_dir.is_dir()
        assert config.logs_dir.is_dir()
