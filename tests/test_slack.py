"""Tests for Slack run notifications."""

from unittest.mock import MagicMock, patch

import pytest

from crew_orchestrator.core.coordinator import ExecutionCoordinator
from crew_orchestrator.integrations.slack import (
    SlackError,
    format_run_notification,
    get_client,
    notify_run,
    send_message,
)


class TestFormat:
    def test_review_notification(self):
        text, blocks = format_run_notification("T1", "Add feature", "review", "Ada", "Ready for review")
        assert text.startswith(":eyes: *Add feature* (`T1`) is now *review* | Agent: Ada")
        assert text.endswith("\nReady for review")
        assert blocks[0]["text"]["text"] == text

    def test_long_detail_is_cut(self):
        text, _ = format_run_notification("T1", "Task", "pending", detail="x" * 500)
        assert text.count("x") == 200


class TestSendMessage:
    def test_no_token(self):
        assert get_client(None) is None
        with pytest.raises(SlackError, match="not configured"):
            send_message(None, "#agents", "hi")

    def test_posts_message(self):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "123.456"}
        with patch("slack_sdk.WebClient", return_value=client):
            msg = send_message("xoxb-test", "#agents", "hi")
        client.chat_postMessage.assert_called_once_with(channel="#agents", text="hi", blocks=None)
        assert msg.ts == "123.456"
        assert msg.channel == "C1"

    def test_notify_run_without_channel(self):
        with patch("crew_orchestrator.integrations.slack.send_message") as send:
            assert notify_run("xoxb-test", None, "T1", "Task", "review") is None
        send.assert_not_called()


class TestCoordinatorNotifier:
    def test_completion_posts_to_slack(self, config, fake_adapter):
        config.slack_bot_token = "xoxb-test"
        config.slack_channel = "#agents"
        coordinator = ExecutionCoordinator(config, adapter_factory=fake_adapter.factory)
        coordinator.create_agent("Ada", agent_id="ada")
        coordinator.create_task("Add feature", task_id="T1", assigned_agent_id="ada")

        with patch("crew_orchestrator.integrations.slack.send_message") as send:
            coordinator.run("T1")
            fake_adapter.last_run.finish(0)
            assert coordinator.wait("T1", timeout=5)

        token, channel, text, blocks = send.call_args.args
        assert (token, channel) == ("xoxb-test", "#agents")
        assert "*review*" in text

    def test_unconfigured_slack_is_silent(self, config, fake_adapter):
        coordinator = ExecutionCoordinator(config, adapter_factory=fake_adapter.factory)
        coordinator.create_agent("Ada", agent_id="ada")
        coordinator.create_task("Add feature", task_id="T1", assigned_agent_id="ada")

        with patch("crew_orchestrator.integrations.slack.send_message") as send:
            coordinator.run("T1")
            fake_adapter.last_run.finish(0)
            assert coordinator.wait("T1", timeout=5)
        send.assert_not_called()
        assert coordinator.get_task("T1").status == "review"
