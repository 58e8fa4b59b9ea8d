"""Single writer of RemediationPolicy ``.status``.

Every mutation is a read-modify-write against the status sub-resource
with the object's ``resourceVersion`` as the precondition.  A 409
conflict rereads and retries with jittered exponential backoff; a 404
means the policy was deleted mid-flight and the update is dropped.

Counters saturate at :data:`~kubemend.models.status.COUNTER_CEILING`
and ``lastError`` / condition messages are byte-truncated, so the status
cannot push the object past the API server's size ceiling.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from kubemend.kube import POLICY_GROUP, POLICY_PLURAL, POLICY_VERSION, is_conflict, is_not_found
from kubemend.models.policy import RemediationPolicy
from kubemend.models.status import (
    CONDITION_NOTIFICATIONS_HEALTHY,
    CONDITION_READY,
    STATUS_FALSE,
    STATUS_TRUE,
    Condition,
    PolicyStatus,
    find_condition,
    saturating_add,
    set_condition,
    truncate_message,
)
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import status_update_conflicts_total, status_updates_total

_log = get_logger("status_aggregator")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MAX_CONFLICT_RETRIES: int = 3
_CONFLICT_BASE_DELAY_S: float = 0.1
_CONFLICT_MAX_DELAY_S: float = 1.0
_CONFLICT_JITTER: float = 0.25

# Reasons
REASON_POLICY_INITIALIZED: str = "PolicyInitialized"
REASON_POLICY_VALID: str = "PolicyValid"
REASON_INVALID_CONFIGURATION: str = "InvalidConfiguration"
REASON_CREDENTIAL_UNAVAILABLE: str = "CredentialUnavailable"
REASON_NOTIFICATIONS_WORKING: str = "NotificationsWorking"
REASON_NOTIFICATION_CONFIG_ERROR: str = "NotificationConfigurationError"
REASON_NOTIFICATION_DELIVERY_FAILED: str = "NotificationDeliveryFailed"

Mutator = Callable[[PolicyStatus, datetime], bool]


class StatusUpdateError(Exception):
    """A status write kept conflicting or failed outright."""


class StatusAggregator:
    """Applies outcome counters and conditions to policy status.

    Args:
        custom_api: ``CustomObjectsApi`` for the policy resource.
        now_fn: Clock, injectable for tests.
        sleep: Awaitable used between conflict retries.
        rng: Jitter source returning floats in [0, 1).
    """

    def __init__(
        self,
        custom_api: Any,
        now_fn: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._api = custom_api
        self._now = now_fn or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep
        self._rng = rng

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def record_success(self, policy: RemediationPolicy) -> None:
        def mutate(status: PolicyStatus, now: datetime) -> bool:
            _count_dispatch(status, now)
            status.successful_remediations = saturating_add(status.successful_remediations)
            return True

        await self._update(policy, mutate, "success")

    async def record_failure(self, policy: RemediationPolicy, error: str) -> None:
        def mutate(status: PolicyStatus, now: datetime) -> bool:
            _count_dispatch(status, now)
            status.failed_remediations = saturating_add(status.failed_remediations)
            status.last_error = truncate_message(error)
            return True

        await self._update(policy, mutate, "failure")

    async def record_rate_limited(self, policy: RemediationPolicy) -> None:
        def mutate(status: PolicyStatus, now: datetime) -> bool:
            status.rate_limited_events = saturating_add(status.rate_limited_events)
            status.last_rate_limited_event = now
            return True

        await self._update(policy, mutate, "rate_limited")

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    async def set_ready(self, policy: RemediationPolicy, ready: bool, reason: str, message: str) -> None:
        await self._set_condition(policy, CONDITION_READY, ready, reason, message)

    async def set_notifications_healthy(
        self, policy: RemediationPolicy, healthy: bool, reason: str, message: str
    ) -> None:
        await self._set_condition(policy, CONDITION_NOTIFICATIONS_HEALTHY, healthy, reason, message)

    async def initialize(self, policy: RemediationPolicy) -> None:
        """Zero the counters and mark a brand-new policy Ready."""
        selector_count = len(policy.event_selectors)

        def mutate(status: PolicyStatus, now: datetime) -> bool:
            if status.conditions or status.total_events_processed:
                return False
            status.conditions = set_condition(
                status.conditions,
                Condition(
                    type=CONDITION_READY,
                    status=STATUS_TRUE,
                    reason=REASON_POLICY_INITIALIZED,
                    message=f"Policy ready to process events with {selector_count} selectors",
                    observed_generation=policy.generation,
                ),
                now,
            )
            return True

        await self._update(policy, mutate, "initialize")

    async def _set_condition(
        self,
        policy: RemediationPolicy,
        condition_type: str,
        ok: bool,
        reason: str,
        message: str,
    ) -> None:
        wanted = STATUS_TRUE if ok else STATUS_FALSE

        def mutate(status: PolicyStatus, now: datetime) -> bool:
            current = find_condition(status.conditions, condition_type)
            if (
                current is not None
                and current.status == wanted
                and current.reason == reason
                and current.message == truncate_message(message)
                and current.observed_generation == policy.generation
            ):
                return False
            status.conditions = set_condition(
                status.conditions,
                Condition(
                    type=condition_type,
                    status=wanted,
                    reason=reason,
                    message=truncate_message(message),
                    observed_generation=policy.generation,
                ),
                now,
            )
            return True

        await self._update(policy, mutate, f"condition_{condition_type}")

    # ------------------------------------------------------------------
    # Read-modify-write
    # ------------------------------------------------------------------

    def _conflict_delay(self, retry: int) -> float:
        raw = min(_CONFLICT_MAX_DELAY_S, _CONFLICT_BASE_DELAY_S * (2 ** (retry - 1)))
        return max(0.0, raw + raw * _CONFLICT_JITTER * (2 * self._rng() - 1))

    async def _update(self, policy: RemediationPolicy, mutate: Mutator, op: str) -> None:
        """Apply *mutate* to the live status, retrying on conflicts.

        Raises StatusUpdateError once conflict retries run out or on any
        other API failure.  A deleted policy is ignored.
        """
        retries = 0
        while True:
            try:
                obj = await self._api.get_namespaced_custom_object(
                    group=POLICY_GROUP,
                    version=POLICY_VERSION,
                    namespace=policy.namespace,
                    plural=POLICY_PLURAL,
                    name=policy.name,
                )
            except Exception as exc:
                if is_not_found(exc):
                    _log.debug("status_policy_gone", policy=policy.key, op=op)
                    return
                status_updates_total.labels(result="error").inc()
                raise StatusUpdateError(f"read {policy.key}: {exc}") from exc

            status = PolicyStatus.from_dict(obj.get("status"))
            if not mutate(status, self._now()):
                return
            obj["status"] = status.to_dict()

            try:
                await self._api.replace_namespaced_custom_object_status(
                    group=POLICY_GROUP,
                    version=POLICY_VERSION,
                    namespace=policy.namespace,
                    plural=POLICY_PLURAL,
                    name=policy.name,
                    body=obj,
                )
            except Exception as exc:
                if is_not_found(exc):
                    _log.debug("status_policy_gone", policy=policy.key, op=op)
                    return
                if not is_conflict(exc):
                    status_updates_total.labels(result="error").inc()
                    raise StatusUpdateError(f"update {policy.key}: {exc}") from exc
                status_update_conflicts_total.inc()
                retries += 1
                if retries > _MAX_CONFLICT_RETRIES:
                    status_updates_total.labels(result="conflict_exhausted").inc()
                    raise StatusUpdateError(
                        f"update {policy.key}: still conflicting after {_MAX_CONFLICT_RETRIES} retries"
                    ) from exc
                delay = self._conflict_delay(retries)
                _log.debug("status_update_conflict", policy=policy.key, op=op, retry=retries, delay_s=round(delay, 3))
                await self._sleep(delay)
                continue

            status_updates_total.labels(result="ok").inc()
            return


def _count_dispatch(status: PolicyStatus, now: datetime) -> None:
    status.total_events_processed = saturating_add(status.total_events_processed)
    status.total_mcp_messages_generated = saturating_add(status.total_mcp_messages_generated)
    status.last_processed_event = now
    status.last_mcp_message_generated = now
