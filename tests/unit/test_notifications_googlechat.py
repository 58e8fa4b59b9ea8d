"""Unit tests for kubemend.notifications.googlechat."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from kubemend.models.events import EventRecord, ObjectReference
from kubemend.models.remediation import RemediationRequest, RemediationResponse
from kubemend.notifications.googlechat import GoogleChatNotificationChannel
from kubemend.notifications.manager import NotificationKind, RemediationNotification

_URL = "https://chat.googleapis.com/v1/spaces/AAA/messages?key=k&token=t"


def _make_notification(
    kind: NotificationKind = NotificationKind.COMPLETE,
    response: RemediationResponse | None = None,
) -> RemediationNotification:
    now = datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC)
    event = EventRecord(
        type="Warning",
        reason="FailedScheduling",
        message="0/3 nodes are available",
        namespace="prod",
        name="web-0.17a",
        involved_object=ObjectReference(kind="Pod", name="web-0", namespace="prod"),
        first_seen=now,
        last_seen=now,
    )
    return RemediationNotification(
        kind=kind,
        policy_name="scheduling",
        event=event,
        request=RemediationRequest(issue="Pod web-0 in namespace prod has a FailedScheduling event", mode="automatic"),
        response=response,
    )


def _card(payload: dict[str, Any]) -> dict[str, Any]:
    return payload["cardsV2"][0]["card"]


def _headers(payload: dict[str, Any]) -> list[str]:
    return [s["header"] for s in _card(payload)["sections"]]


class TestGoogleChatNotificationChannel:
    def test_raises_on_empty_webhook_url(self) -> None:
        with pytest.raises(ValueError, match="webhook_url"):
            GoogleChatNotificationChannel(webhook_url="")

    def test_channel_name(self) -> None:
        assert GoogleChatNotificationChannel(webhook_url=_URL).channel_name == "googlechat"

    def test_start_card(self) -> None:
        payload = GoogleChatNotificationChannel(_URL)._build_payload(_make_notification(NotificationKind.START))
        assert payload["cardsV2"][0]["cardId"] == "remediation-notification"
        header = _card(payload)["header"]
        assert "Remediation Started" in header["title"]
        assert header["subtitle"] == "Policy: scheduling"
        assert _headers(payload) == ["Event Details", "Issue"]
        widgets = _card(payload)["sections"][0]["widgets"]
        labels = {w["decoratedText"]["topLabel"]: w["decoratedText"]["text"] for w in widgets}
        assert labels["Resource"] == "Pod/web-0"
        assert labels["Mode"] == "automatic"

    def test_completed_card_sections(self) -> None:
        resp = RemediationResponse(
            success=True,
            result={
                "message": "Scaled node pool",
                "executed": True,
                "remediation": {"actions": [{"command": "kubectl scale ..."}]},
            },
            execution_time_ms=800,
        )
        payload = GoogleChatNotificationChannel(_URL)._build_payload(_make_notification(response=resp))
        assert "Completed Successfully" in _card(payload)["header"]["title"]
        assert _headers(payload) == ["Result", "Event Details", "Details", "Commands Executed", "Original Issue"]

    def test_failed_card(self) -> None:
        resp = RemediationResponse.failure("503", "HTTP 503: unavailable")
        payload = GoogleChatNotificationChannel(_URL)._build_payload(_make_notification(response=resp))
        assert "Failed" in _card(payload)["header"]["title"]
        result_text = _card(payload)["sections"][0]["widgets"][0]["textParagraph"]["text"]
        assert result_text == "HTTP 503: unavailable"

    async def test_send_accepts_any_2xx(self) -> None:
        ch = GoogleChatNotificationChannel(_URL)
        mock_response = MagicMock()
        mock_response.is_success = True

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=False)
            mock_client.post = AsyncMock(return_value=mock_response)
            mock_client_cls.return_value = mock_client
            assert await ch.send(_make_notification()) is True

    async def test_send_false_on_error_status(self) -> None:
        ch = GoogleChatNotificationChannel(_URL)
        mock_response = MagicMock()
        mock_response.is_success = False
        mock_response.status_code = 400
        mock_response.text = "bad card"

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=False)
            mock_client.post = AsyncMock(return_value=mock_response)
            mock_client_cls.return_value = mock_client
            assert await ch.send(_make_notification()) is False

    async def test_send_false_on_transport_error(self) -> None:
        ch = GoogleChatNotificationChannel(_URL)
        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=False)
            mock_client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
            mock_client_cls.return_value = mock_client
            assert await ch.send(_make_notification()) is False
