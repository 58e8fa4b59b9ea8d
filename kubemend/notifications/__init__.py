"""Remediation notifications for Slack and Google Chat."""

from __future__ import annotations

from kubemend.notifications.dispatcher import NotificationDispatcher
from kubemend.notifications.manager import (
    NotificationChannel,
    NotificationKind,
    RemediationNotification,
    WebhookResolutionError,
    resolve_webhook_url,
)

__all__ = [
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationKind",
    "RemediationNotification",
    "WebhookResolutionError",
    "resolve_webhook_url",
]
