"""Kubernetes Events on RemediationPolicy objects.

Every match, remediation outcome and policy lifecycle change is written as
a ``v1.Event`` whose ``involvedObject`` is the policy, so ``kubectl
describe remediationpolicy`` shows an audit trail.  Recording is
best-effort: failures are logged and counted, never raised.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

from kubemend.kube import MANAGED_BY, POLICY_GROUP, POLICY_KIND, POLICY_VERSION
from kubemend.models.policy import RemediationPolicy
from kubemend.models.status import format_time
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import policy_events_total

NORMAL: str = "Normal"
WARNING: str = "Warning"

REASON_POLICY_CREATED: str = "PolicyCreated"
REASON_STATUS_INITIALIZATION_FAILED: str = "StatusInitializationFailed"
REASON_EVENT_MATCHED: str = "EventMatched"
REASON_REQUEST_SUCCEEDED: str = "McpRequestSucceeded"
REASON_REQUEST_FAILED: str = "McpRequestFailed"
REASON_REMEDIATION_FAILED: str = "McpRemediationFailed"
REASON_STATUS_UPDATE_FAILED: str = "StatusUpdateFailed"

# Longer messages are cut to this length.
_MAX_MESSAGE_CHARS: int = 1024

_log = get_logger("recorder")


class EventRecorder:
    """Creates Events in the policy's namespace through ``CoreV1Api``."""

    def __init__(self, core_api: Any, component: str = MANAGED_BY) -> None:
        self._api = core_api
        self._component = component

    async def normal(self, policy: RemediationPolicy, reason: str, message: str) -> None:
        await self.record(policy, NORMAL, reason, message)

    async def warning(self, policy: RemediationPolicy, reason: str, message: str) -> None:
        await self.record(policy, WARNING, reason, message)

    async def record(self, policy: RemediationPolicy, event_type: str, reason: str, message: str) -> None:
        body = self._build(policy, event_type, reason, message)
        try:
            await self._api.create_namespaced_event(namespace=policy.namespace, body=body)
        except Exception as exc:
            policy_events_total.labels(reason=reason, result="error").inc()
            _log.warning("policy_event_failed", policy=policy.key, reason=reason, error=str(exc))
            return
        policy_events_total.labels(reason=reason, result="ok").inc()

    def _build(self, policy: RemediationPolicy, event_type: str, reason: str, message: str) -> dict[str, Any]:
        now = format_time(datetime.now(tz=UTC))
        involved: dict[str, Any] = {
            "apiVersion": f"{POLICY_GROUP}/{POLICY_VERSION}",
            "kind": POLICY_KIND,
            "name": policy.name,
            "namespace": policy.namespace,
        }
        if policy.uid:
            involved["uid"] = policy.uid
        if policy.resource_version:
            involved["resourceVersion"] = policy.resource_version
        if len(message) > _MAX_MESSAGE_CHARS:
            message = message[: _MAX_MESSAGE_CHARS - 3] + "..."
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{policy.name}.{time.time_ns():x}",
                "namespace": policy.namespace,
            },
            "involvedObject": involved,
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self._component},
            "reportingComponent": self._component,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
