"""Google Chat notification channel.

Renders the same information as the Slack channel as a ``cardsV2`` card
and posts it to a Chat space webhook.
"""

from __future__ import annotations

from typing import Any

import structlog

from kubemend.notifications.manager import NotificationChannel, NotificationKind, RemediationNotification

_log = structlog.get_logger(component="notifications.googlechat")

_CARD_ID: str = "remediation-notification"
_MAX_COMMANDS: int = 10


def _decorated(label: str, text: str, icon: str) -> dict[str, Any]:
    return {"decoratedText": {"topLabel": label, "text": text, "startIcon": {"knownIcon": icon}}}


def _paragraph(text: str) -> dict[str, Any]:
    return {"textParagraph": {"text": text}}


class GoogleChatNotificationChannel(NotificationChannel):
    """Delivers remediation notifications to a Google Chat space.

    Args:
        webhook_url: Chat incoming webhook URL.
        timeout: HTTP request timeout in seconds. Defaults to 10.
    """

    def __init__(self, webhook_url: str, timeout: float = 10.0) -> None:
        if not webhook_url:
            raise ValueError("Google Chat webhook_url must not be empty")
        self._webhook_url = webhook_url
        self._timeout = timeout

    @property
    def channel_name(self) -> str:
        return "googlechat"

    async def send(self, notification: RemediationNotification) -> bool:
        """Post *notification*; any 2xx response counts as delivered."""
        import httpx

        payload = self._build_payload(notification)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._webhook_url, json=payload)
                if response.is_success:
                    return True
                _log.warning(
                    "googlechat_unexpected_status",
                    status_code=response.status_code,
                    body=response.text[:200],
                    policy=notification.policy_name,
                )
                return False
        except httpx.TimeoutException:
            _log.warning("googlechat_request_timeout", policy=notification.policy_name)
            return False
        except httpx.HTTPError as exc:
            _log.warning("googlechat_http_error", error=str(exc), policy=notification.policy_name)
            return False

    def _build_payload(self, n: RemediationNotification) -> dict[str, Any]:
        if n.kind is NotificationKind.START:
            title = "🔄 Remediation Started"
            sections = self._start_sections(n)
        else:
            if not n.succeeded:
                title = "❌ Remediation Failed"
            elif n.executed:
                title = "✅ Remediation Completed Successfully"
            else:
                title = "📋 Analysis Completed - Manual Action Required"
            sections = self._complete_sections(n)

        return {
            "cardsV2": [
                {
                    "cardId": _CARD_ID,
                    "card": {
                        "header": {
                            "title": title,
                            "subtitle": f"Policy: {n.policy_name}",
                            "imageType": "CIRCLE",
                        },
                        "sections": sections,
                    },
                }
            ]
        }

    @staticmethod
    def _event_widgets(n: RemediationNotification) -> list[dict[str, Any]]:
        ref = n.event.involved_object
        return [
            _decorated("Event Type", f"{n.event.type}/{n.event.reason}", "BOOKMARK"),
            _decorated("Resource", f"{ref.kind}/{ref.name}", "DESCRIPTION"),
            _decorated("Namespace", ref.namespace or n.event.namespace, "MAP_PIN"),
            _decorated("Mode", n.request.mode, "TICKET"),
        ]

    def _start_sections(self, n: RemediationNotification) -> list[dict[str, Any]]:
        return [
            {"header": "Event Details", "widgets": self._event_widgets(n)},
            {"header": "Issue", "widgets": [_paragraph(n.request.issue)]},
        ]

    def _complete_sections(self, n: RemediationNotification) -> list[dict[str, Any]]:
        resp = n.response
        summary = resp.summary() if resp is not None else "no response"
        sections: list[dict[str, Any]] = [
            {"header": "Result", "widgets": [_paragraph(summary)]},
            {"header": "Event Details", "widgets": self._event_widgets(n)},
        ]

        if resp is not None:
            details: list[dict[str, Any]] = []
            if resp.execution_time_ms > 0:
                details.append(_paragraph(f"<b>Execution Time:</b> {resp.execution_time_seconds:.2f}s"))
            if resp.confidence is not None:
                details.append(_paragraph(f"<b>Confidence:</b> {resp.confidence * 100:.0f}%"))
            if resp.root_cause:
                details.append(_paragraph(f"<b>Root Cause:</b> {resp.root_cause}"))
            if resp.validation_passed is not None:
                details.append(
                    _paragraph(f"<b>Validation:</b> {'✅ Passed' if resp.validation_passed else '❌ Failed'}")
                )
            if resp.actions_taken:
                details.append(_paragraph(f"<b>Actions Taken:</b> {resp.actions_taken} remediation actions"))
            if not resp.success and resp.error is not None:
                if resp.error.code:
                    details.append(_paragraph(f"<b>Error Code:</b> {resp.error.code}"))
                if resp.error_reason:
                    details.append(_paragraph(f"<b>Error Details:</b> {resp.error_reason}"))
            if details:
                sections.append({"header": "Details", "widgets": details})

            commands = resp.commands
            if commands:
                heading = "Commands Executed" if resp.executed else "Recommended Commands"
                widgets = [_paragraph(f"<code>{cmd}</code>") for cmd in commands[:_MAX_COMMANDS]]
                if len(commands) > _MAX_COMMANDS:
                    widgets.append(_paragraph(f"<i>... and {len(commands) - _MAX_COMMANDS} more commands</i>"))
                sections.append({"header": heading, "widgets": widgets})

        sections.append({"header": "Original Issue", "widgets": [_paragraph(n.request.issue)]})
        return sections
