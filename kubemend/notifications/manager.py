"""Notification channel interface and webhook URL resolution."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kubemend.kube import SecretResolutionError, read_secret_value
from kubemend.models.events import EventRecord
from kubemend.models.policy import WebhookConfig
from kubemend.models.remediation import RemediationRequest, RemediationResponse
from kubemend.observability.logging import get_logger

_log = get_logger("notifications")


class NotificationKind(StrEnum):
    START = "start"
    COMPLETE = "complete"


class WebhookResolutionError(SecretResolutionError):
    """The webhook URL Secret is missing, lacks the key, or is empty."""


@dataclass(frozen=True)
class RemediationNotification:
    """Everything a channel needs to render one start/complete message."""

    kind: NotificationKind
    policy_name: str
    event: EventRecord
    request: RemediationRequest
    response: RemediationResponse | None = None

    @property
    def succeeded(self) -> bool:
        return self.response is not None and self.response.success

    @property
    def executed(self) -> bool:
        return self.response is not None and self.response.executed


class NotificationChannel(ABC):
    """Abstract base for a chat-webhook channel."""

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Short identifier used in logs and metrics."""

    @abstractmethod
    async def send(self, notification: RemediationNotification) -> bool:
        """Deliver *notification*.  Returns True on success; never raises."""


async def resolve_webhook_url(core_api: Any, namespace: str, cfg: WebhookConfig, channel: str) -> str:
    """Return the webhook URL for *cfg*, or "" when none is configured.

    A ``webhookUrlSecretRef`` always wins over a plain ``webhookUrl``.
    The plain field still works but is deprecated.

    Raises:
        WebhookResolutionError: the referenced Secret cannot supply a URL.
    """
    ref = cfg.webhook_url_secret_ref
    if ref is not None:
        if cfg.webhook_url:
            _log.warning(
                "webhook_url_ignored",
                channel=channel,
                namespace=namespace,
                detail="both webhookUrl and webhookUrlSecretRef set; using the Secret",
            )
        try:
            return await read_secret_value(core_api, namespace, ref.name, ref.key)
        except SecretResolutionError as exc:
            raise WebhookResolutionError(f"{channel} webhook: {exc}") from exc

    if cfg.webhook_url:
        _log.warning(
            "webhook_url_deprecated",
            channel=channel,
            namespace=namespace,
            detail="plain webhookUrl is deprecated; use webhookUrlSecretRef",
        )
        return cfg.webhook_url
    return ""
