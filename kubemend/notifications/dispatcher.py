"""Per-policy notification fan-out.

For every enabled channel on a policy the dispatcher resolves the webhook
URL, renders and sends the message, and reflects the result in the
policy's ``NotificationsHealthy`` condition.  Nothing here raises into
the remediation path.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from kubemend.models.events import EventRecord
from kubemend.models.policy import RemediationPolicy, WebhookConfig
from kubemend.models.remediation import RemediationRequest, RemediationResponse
from kubemend.notifications.googlechat import GoogleChatNotificationChannel
from kubemend.notifications.manager import (
    NotificationChannel,
    NotificationKind,
    RemediationNotification,
    WebhookResolutionError,
    resolve_webhook_url,
)
from kubemend.notifications.slack import SlackNotificationChannel
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import notifications_total
from kubemend.remediation.status import (
    REASON_NOTIFICATION_CONFIG_ERROR,
    REASON_NOTIFICATION_DELIVERY_FAILED,
    REASON_NOTIFICATIONS_WORKING,
    StatusAggregator,
    StatusUpdateError,
)

_log = get_logger("notification_dispatcher")

ChannelFactory = Callable[[str, str, WebhookConfig, float], NotificationChannel]


def default_channel_factory(label: str, url: str, cfg: WebhookConfig, timeout: float) -> NotificationChannel:
    if label == "slack":
        return SlackNotificationChannel(webhook_url=url, channel=cfg.channel, timeout=timeout)
    if label == "googleChat":
        return GoogleChatNotificationChannel(webhook_url=url, timeout=timeout)
    raise ValueError(f"unknown notification channel: {label}")


def _wants(cfg: WebhookConfig, kind: NotificationKind) -> bool:
    if not cfg.enabled:
        return False
    return cfg.notify_on_start if kind is NotificationKind.START else cfg.notify_on_complete


class NotificationDispatcher:
    """Sends start/complete notifications for a policy's enabled channels.

    Args:
        core_api: ``CoreV1Api`` used to resolve webhook URL Secrets.
        aggregator: Receives ``NotificationsHealthy`` updates.
        timeout: Per-request webhook timeout in seconds.
        channel_factory: Builds a channel from a resolved URL.
    """

    def __init__(
        self,
        core_api: Any,
        aggregator: StatusAggregator | None = None,
        timeout: float = 10.0,
        channel_factory: ChannelFactory = default_channel_factory,
    ) -> None:
        self._core = core_api
        self._aggregator = aggregator
        self._timeout = timeout
        self._factory = channel_factory

    async def notify(
        self,
        kind: NotificationKind,
        policy: RemediationPolicy,
        event: EventRecord,
        request: RemediationRequest,
        response: RemediationResponse | None = None,
    ) -> bool | None:
        """Send *kind* to every enabled channel.

        Returns True when all attempted sends succeeded, False when any
        failed, None when no channel wanted this notification.
        """
        notification = RemediationNotification(
            kind=kind,
            policy_name=policy.name,
            event=event,
            request=request,
            response=response,
        )
        channels = (
            ("slack", policy.notifications.slack),
            ("googleChat", policy.notifications.google_chat),
        )

        attempted = False
        problems: list[tuple[str, str]] = []
        for label, cfg in channels:
            if not _wants(cfg, kind):
                continue
            try:
                url = await resolve_webhook_url(self._core, policy.namespace, cfg, label)
            except WebhookResolutionError as exc:
                attempted = True
                _log.warning("notification_webhook_unresolved", policy=policy.key, channel=label, error=str(exc))
                notifications_total.labels(channel=label, success="false").inc()
                problems.append((REASON_NOTIFICATION_CONFIG_ERROR, str(exc)))
                continue
            if not url:
                continue

            attempted = True
            channel = self._factory(label, url, cfg, self._timeout)
            ok = await channel.send(notification)
            notifications_total.labels(channel=channel.channel_name, success=str(ok).lower()).inc()
            if ok:
                _log.debug("notification_sent", policy=policy.key, channel=label, kind=kind.value)
            else:
                problems.append(
                    (REASON_NOTIFICATION_DELIVERY_FAILED, f"{label} {kind.value} notification delivery failed")
                )

        if not attempted:
            return None
        await self._report_health(policy, problems)
        return not problems

    async def _report_health(self, policy: RemediationPolicy, problems: list[tuple[str, str]]) -> None:
        if self._aggregator is None:
            return
        if problems:
            # Configuration problems outrank delivery failures
            problems.sort(key=lambda p: p[0] != REASON_NOTIFICATION_CONFIG_ERROR)
            reason = problems[0][0]
            message = "; ".join(msg for _, msg in problems)
            healthy = False
        else:
            reason, message, healthy = REASON_NOTIFICATIONS_WORKING, "Notifications delivered successfully", True
        try:
            await self._aggregator.set_notifications_healthy(policy, healthy, reason, message)
        except StatusUpdateError as exc:
            _log.warning("notification_health_update_failed", policy=policy.key, error=str(exc))
