"""Slack run notifications."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

STATUS_EMOJI = {
    "inbox": ":inbox_tray:",
    "planned": ":white_circle:",
    "in_progress": ":large_blue_circle:",
    "review": ":eyes:",
    "done": ":white_check_mark:",
    "pending": ":double_vertical_bar:",
    "cancelled": ":x:",
}

DETAIL_CHARS = 200


class SlackError(Exception):
    """Raised when Slack is unconfigured or rejects a message."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """WebClient for ``token``, or None without one."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    client = get_client(token)
    if client is None:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_run_notification(
    task_id: str,
    title: str,
    status: str,
    agent_name: str | None = None,
    detail: str | None = None,
) -> tuple[str, list[dict]]:
    """Fallback text plus a single mrkdwn section block for a run outcome."""
    emoji = STATUS_EMOJI.get(status, ":grey_question:")
    text = f"{emoji} *{title}* (`{task_id}`) is now *{status}*"
    if agent_name:
        text += f" | Agent: {agent_name}"
    if detail:
        text += f"\n{detail[:DETAIL_CHARS]}"
    return text, [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def notify_run(
    token: str | None,
    channel: str | None,
    task_id: str,
    title: str,
    status: str,
    agent_name: str | None = None,
    detail: str | None = None,
) -> SlackMessage | None:
    """Post a run outcome. Returns None when Slack is not configured."""
    if not token or not channel:
        return None
    text, blocks = format_run_notification(task_id, title, status, agent_name, detail)
    message = send_message(token, channel, text, blocks)
    logger.info("Posted %s notification for task %s to %s", status, task_id, channel)
    return message
