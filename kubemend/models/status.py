"""RemediationPolicy status model and size-safety helpers.

The status sub-resource lives on the same etcd object as the policy
spec, so anything that grows without bound here eventually pushes the
object past the API server's request size ceiling and wedges every
later write.  Two guards keep it bounded:

- counters saturate at :data:`COUNTER_CEILING` (never wrap, never go
  negative);
- ``lastError`` and condition messages are truncated to
  :data:`MESSAGE_MAX_BYTES` bytes of UTF-8.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COUNTER_CEILING: int = 100_000
MESSAGE_MAX_BYTES: int = 1024
_TRUNCATION_MARKER: str = "...[truncated]"

CONDITION_READY: str = "Ready"
CONDITION_NOTIFICATIONS_HEALTHY: str = "NotificationsHealthy"

STATUS_TRUE: str = "True"
STATUS_FALSE: str = "False"


def saturating_add(value: int, delta: int = 1, ceiling: int = COUNTER_CEILING) -> int:
    """Return ``value + delta`` clamped to ``[0, ceiling]``."""
    return max(0, min(ceiling, max(0, value) + delta))


def truncate_message(message: str, max_bytes: int = MESSAGE_MAX_BYTES) -> str:
    """Truncate *message* so its UTF-8 encoding is at most *max_bytes* bytes.

    A marker is appended when truncation happens.  Multi-byte characters
    are never split.
    """
    encoded = message.encode("utf-8")
    if len(encoded) <= max_bytes:
        return message
    marker = _TRUNCATION_MARKER.encode("utf-8")
    if max_bytes <= len(marker):
        return encoded[:max_bytes].decode("utf-8", errors="ignore")
    head = encoded[: max_bytes - len(marker)].decode("utf-8", errors="ignore")
    return head + _TRUNCATION_MARKER


def format_time(value: datetime | None) -> str | None:
    """Render a datetime as RFC 3339 with a ``Z`` suffix, second precision."""
    if value is None:
        return None
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Condition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Condition:
    """A ``metav1.Condition``."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime | None = None
    observed_generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": truncate_message(self.message),
            "lastTransitionTime": format_time(self.last_transition_time or datetime.now(tz=UTC)),
            "observedGeneration": self.observed_generation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            type=str(data.get("type", "")),
            status=str(data.get("status", "")),
            reason=str(data.get("reason", "")),
            message=str(data.get("message", "")),
            last_transition_time=parse_time(data.get("lastTransitionTime")),
            observed_generation=int(data.get("observedGeneration") or 0),
        )


def set_condition(conditions: list[Condition], new: Condition, now: datetime | None = None) -> list[Condition]:
    """Return *conditions* with *new* inserted or replacing the same type.

    ``lastTransitionTime`` only moves when the status value changes.
    """
    now = now or datetime.now(tz=UTC)
    result: list[Condition] = []
    found = False
    for existing in conditions:
        if existing.type != new.type:
            result.append(existing)
            continue
        found = True
        if existing.status == new.status and existing.last_transition_time is not None:
            result.append(replace(new, last_transition_time=existing.last_transition_time))
        else:
            result.append(replace(new, last_transition_time=now))
    if not found:
        result.append(replace(new, last_transition_time=now))
    return result


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for cond in conditions:
        if cond.type == condition_type:
            return cond
    return None


# ---------------------------------------------------------------------------
# PolicyStatus
# ---------------------------------------------------------------------------


@dataclass
class PolicyStatus:
    """Mutable working copy of a policy's ``.status``.

    Only the status aggregator builds and writes these.
    """

    total_events_processed: int = 0
    successful_remediations: int = 0
    failed_remediations: int = 0
    rate_limited_events: int = 0
    total_mcp_messages_generated: int = 0
    last_processed_event: datetime | None = None
    last_mcp_message_generated: datetime | None = None
    last_rate_limited_event: datetime | None = None
    last_error: str = ""
    conditions: list[Condition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PolicyStatus:
        data = data or {}
        return cls(
            total_events_processed=_clamp(data.get("totalEventsProcessed")),
            successful_remediations=_clamp(data.get("successfulRemediations")),
            failed_remediations=_clamp(data.get("failedRemediations")),
            rate_limited_events=_clamp(data.get("rateLimitedEvents")),
            total_mcp_messages_generated=_clamp(data.get("totalMcpMessagesGenerated")),
            last_processed_event=parse_time(data.get("lastProcessedEvent")),
            last_mcp_message_generated=parse_time(data.get("lastMcpMessageGenerated")),
            last_rate_limited_event=parse_time(data.get("lastRateLimitedEvent")),
            last_error=str(data.get("lastError") or ""),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or [] if isinstance(c, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "totalEventsProcessed": _clamp(self.total_events_processed),
            "successfulRemediations": _clamp(self.successful_remediations),
            "failedRemediations": _clamp(self.failed_remediations),
            "rateLimitedEvents": _clamp(self.rate_limited_events),
            "totalMcpMessagesGenerated": _clamp(self.total_mcp_messages_generated),
            "conditions": [c.to_dict() for c in self.conditions],
        }
        for key, value in (
            ("lastProcessedEvent", self.last_processed_event),
            ("lastMcpMessageGenerated", self.last_mcp_message_generated),
            ("lastRateLimitedEvent", self.last_rate_limited_event),
        ):
            if value is not None:
                out[key] = format_time(value)
        if self.last_error:
            out["lastError"] = truncate_message(self.last_error)
        return out


def _clamp(value: Any) -> int:
    try:
        n = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, min(COUNTER_CEILING, n))
