"""Slack notification channel.

Posts remediation start/complete messages to an incoming webhook using
Block Kit blocks wrapped in one colour-coded attachment.
"""

from __future__ import annotations

from typing import Any

import structlog

from kubemend.notifications.manager import NotificationChannel, NotificationKind, RemediationNotification

_log = structlog.get_logger(component="notifications.slack")

_USERNAME: str = "kubemend"
_MAX_COMMANDS: int = 10

# Attachment sidebar colours
_COLOR_START: str = "#f2994a"
_COLOR_EXECUTED: str = "#2eb67d"
_COLOR_MANUAL: str = "#0073e6"
_COLOR_FAILED: str = "#e01e5a"


def _mrkdwn(text: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _fields(*items: str) -> dict[str, Any]:
    return {"type": "section", "fields": [{"type": "mrkdwn", "text": t} for t in items]}


class SlackNotificationChannel(NotificationChannel):
    """Delivers remediation notifications to Slack via an incoming webhook.

    Args:
        webhook_url: Slack incoming webhook URL
                     (e.g. ``https://hooks.slack.com/services/…``).
        channel: Optional channel override (``#ops``).
        timeout: HTTP request timeout in seconds. Defaults to 10.
    """

    def __init__(self, webhook_url: str, channel: str = "", timeout: float = 10.0) -> None:
        if not webhook_url:
            raise ValueError("Slack webhook_url must not be empty")
        self._webhook_url = webhook_url
        self._channel = channel
        self._timeout = timeout

    @property
    def channel_name(self) -> str:
        return "slack"

    async def send(self, notification: RemediationNotification) -> bool:
        """Post *notification* to Slack.

        Returns True on HTTP 200 OK, False otherwise.
        """
        import httpx

        payload = self._build_payload(notification)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._webhook_url, json=payload)
                if response.status_code == 200:
                    return True
                _log.warning(
                    "slack_unexpected_status",
                    status_code=response.status_code,
                    body=response.text[:200],
                    policy=notification.policy_name,
                )
                return False
        except httpx.TimeoutException:
            _log.warning("slack_request_timeout", policy=notification.policy_name)
            return False
        except httpx.HTTPError as exc:
            _log.warning("slack_http_error", error=str(exc), policy=notification.policy_name)
            return False

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def _build_payload(self, notification: RemediationNotification) -> dict[str, Any]:
        """Construct a Slack Block Kit message payload."""
        if notification.kind is NotificationKind.START:
            color, blocks = _COLOR_START, self._start_blocks(notification)
        else:
            color, blocks = self._complete_color(notification), self._complete_blocks(notification)

        payload: dict[str, Any] = {
            "username": _USERNAME,
            "attachments": [{"color": color, "blocks": blocks}],
        }
        if self._channel:
            payload["channel"] = self._channel
        return payload

    @staticmethod
    def _complete_color(notification: RemediationNotification) -> str:
        if not notification.succeeded:
            return _COLOR_FAILED
        return _COLOR_EXECUTED if notification.executed else _COLOR_MANUAL

    @staticmethod
    def _header(text: str) -> dict[str, Any]:
        return {"type": "header", "text": {"type": "plain_text", "text": text, "emoji": True}}

    @staticmethod
    def _footer(notification: RemediationNotification) -> dict[str, Any]:
        return {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"Policy: `{notification.policy_name}` | KubeMend"}],
        }

    def _start_blocks(self, n: RemediationNotification) -> list[dict[str, Any]]:
        ref = n.event.involved_object
        return [
            self._header("🔄 Remediation Started"),
            _fields(
                f"*Event Type:*\n{n.event.type}/{n.event.reason}",
                f"*Resource:*\n{ref.kind}/{ref.name}",
                f"*Namespace:*\n{ref.namespace or n.event.namespace}",
                f"*Mode:*\n{n.request.mode}",
            ),
            _mrkdwn(f"*Issue:*\n{n.request.issue}"),
            {"type": "divider"},
            self._footer(n),
        ]

    def _complete_blocks(self, n: RemediationNotification) -> list[dict[str, Any]]:
        if not n.succeeded:
            title = "❌ Remediation Failed"
        elif n.executed:
            title = "✅ Remediation Completed Successfully"
        else:
            title = "📋 Analysis Completed - Manual Action Required"

        ref = n.event.involved_object
        summary = n.response.summary() if n.response is not None else "no response"
        blocks: list[dict[str, Any]] = [
            self._header(title),
            _mrkdwn(f"*Result:*\n{summary}"),
            _fields(
                f"*Resource:*\n{ref.kind}/{ref.name}",
                f"*Namespace:*\n{ref.namespace or n.event.namespace}",
                f"*Mode:*\n{n.request.mode}",
                f"*Event:*\n{n.event.reason}",
            ),
        ]
        blocks.extend(self._detail_blocks(n))
        blocks.append(_mrkdwn(f"*Original Issue:*\n{n.request.issue}"))
        blocks.append({"type": "divider"})
        blocks.append(self._footer(n))
        return blocks

    @staticmethod
    def _detail_blocks(n: RemediationNotification) -> list[dict[str, Any]]:
        resp = n.response
        if resp is None:
            return []
        blocks: list[dict[str, Any]] = []

        facts: list[str] = []
        if resp.execution_time_ms > 0:
            facts.append(f"*Execution Time:*\n{resp.execution_time_seconds:.2f}s")
        if resp.confidence is not None:
            facts.append(f"*Confidence:*\n{resp.confidence * 100:.0f}%")
        if facts:
            blocks.append(_fields(*facts))

        if resp.root_cause:
            blocks.append(_mrkdwn(f"*Root Cause:*\n{resp.root_cause}"))
        if resp.analysis_confidence is not None:
            blocks.append(_mrkdwn(f"*Analysis Confidence:* {resp.analysis_confidence * 100:.0f}%"))

        commands = resp.commands
        if commands:
            heading = "*Commands Executed:*" if resp.executed else "*Recommended Commands:*"
            blocks.append(_mrkdwn(heading))
            for cmd in commands[:_MAX_COMMANDS]:
                blocks.append(_mrkdwn(f"```\n{cmd}\n```"))
            if len(commands) > _MAX_COMMANDS:
                blocks.append(_mrkdwn(f"_... and {len(commands) - _MAX_COMMANDS} more commands_"))

        if resp.validation_passed is not None:
            mark = "✅ Passed" if resp.validation_passed else "❌ Failed"
            blocks.append(_mrkdwn(f"*Validation:* {mark}"))
        if resp.actions_taken:
            blocks.append(_mrkdwn(f"*Actions Taken:* {resp.actions_taken} remediation actions"))

        if not resp.success and resp.error is not None:
            if resp.error.code:
                blocks.append(_mrkdwn(f"*Error Code:* `{resp.error.code}`"))
            if resp.error_reason:
                blocks.append(_mrkdwn(f"*Error Details:* {resp.error_reason}"))
        return blocks
