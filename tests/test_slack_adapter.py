"""Tests for the Slack adapter helpers."""

import pytest

from switchboard import slack_adapter
from switchboard.slack_adapter import channel_of, chunk_text, conversation_key, slack_ts_to_iso


class TestKeys:
    def test_conversation_key_round_trip(self):
        assert conversation_key("C123") == "slack:C123"
        assert channel_of("slack:C123") == "C123"
        assert channel_of("C123") == "C123"

    def test_slack_ts_to_iso(self):
        assert slack_ts_to_iso("1704067200.000100") == "2024-01-01T00:00:00.000+00:00"


class TestChunking:
    def test_short_text_untouched(self):
        assert chunk_text("hello") == ["hello"]

    def test_splits_on_newlines(self):
        text = "\n".join(["x" * 40] * 10)
        chunks = chunk_text(text, limit=100)
        assert all(len(c) <= 100 for c in chunks)
        assert "\n".join(chunks) == text

    def test_long_line_hard_split(self):
        chunks = chunk_text("y" * 250, limit=100)
        assert [len(c) for c in chunks] == [100, 100, 50]


def test_missing_slack_extra(monkeypatch):
    monkeypatch.setattr(slack_adapter, "HAS_SLACK", False)
    with pytest.raises(ImportError, match="switchboard\\[slack\\]"):
        slack_adapter.SlackAdapter("xoxb", "xapp", orchestrator=None)
