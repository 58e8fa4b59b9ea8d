"""RemediationPolicy custom resource model.

Policies are read from the API server as plain dicts (``CustomObjectsApi``
returns JSON-decoded objects) and parsed once into immutable dataclasses
by :meth:`RemediationPolicy.from_dict`.  Defaults mirror the CRD schema
defaults so that a policy applied without them behaves the same as one
that spells them out.

Validation is separate from parsing: :meth:`RemediationPolicy.validate`
returns a list of human-readable problems instead of raising, so the
reconciler can surface every problem at once in the ``Ready`` condition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MODE: str = "manual"
DEFAULT_CONFIDENCE_THRESHOLD: float = 0.8
DEFAULT_MAX_RISK_LEVEL: str = "low"
DEFAULT_MCP_TOOL: str = "remediate"
DEFAULT_EVENTS_PER_MINUTE: int = 10
DEFAULT_COOLDOWN_MINUTES: int = 5

SLACK_WEBHOOK_PREFIX: str = "https://hooks.slack.com/"
GOOGLE_CHAT_WEBHOOK_PREFIX: str = "https://chat.googleapis.com/"


class Mode(StrEnum):
    """How the remediation backend handles a matched event."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


class RiskLevel(StrEnum):
    """Highest risk the backend may accept when acting automatically."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PolicyValidationError(ValueError):
    """Raised when a policy is malformed and cannot be processed."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems))
        self.problems = problems


# ---------------------------------------------------------------------------
# Spec types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventSelector:
    """Ordered match rule.  Empty string fields are wildcards."""

    type: str = ""
    reason: str = ""
    involved_object_kind: str = ""
    namespace: str = ""
    mode: str = ""
    confidence_threshold: float | None = None
    max_risk_level: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventSelector:
        return cls(
            type=str(data.get("type") or ""),
            reason=str(data.get("reason") or ""),
            involved_object_kind=str(data.get("involvedObjectKind") or ""),
            namespace=str(data.get("namespace") or ""),
            mode=str(data.get("mode") or ""),
            confidence_threshold=_opt_float(data.get("confidenceThreshold")),
            max_risk_level=str(data.get("maxRiskLevel") or ""),
        )


@dataclass(frozen=True)
class SecretReference:
    """Key inside a Secret in the policy's namespace."""

    name: str
    key: str

    @classmethod
    def from_dict(cls, data: Any) -> SecretReference | None:
        if not isinstance(data, dict):
            return None
        return cls(name=str(data.get("name") or ""), key=str(data.get("key") or ""))


@dataclass(frozen=True)
class RateLimiting:
    """Per-key throttling.  Both values zero disables rate limiting."""

    events_per_minute: int = DEFAULT_EVENTS_PER_MINUTE
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES

    @property
    def disabled(self) -> bool:
        return self.events_per_minute == 0 and self.cooldown_minutes == 0

    @property
    def cooldown_seconds(self) -> float:
        return float(self.cooldown_minutes * 60)

    @classmethod
    def from_dict(cls, data: Any) -> RateLimiting:
        if not isinstance(data, dict):
            return cls()
        return cls(
            events_per_minute=_int_or(data.get("eventsPerMinute"), DEFAULT_EVENTS_PER_MINUTE),
            cooldown_minutes=_int_or(data.get("cooldownMinutes"), DEFAULT_COOLDOWN_MINUTES),
        )


@dataclass(frozen=True)
class WebhookConfig:
    """Settings shared by every chat-webhook integration."""

    enabled: bool = False
    webhook_url: str = ""
    webhook_url_secret_ref: SecretReference | None = None
    channel: str = ""
    notify_on_start: bool = False
    notify_on_complete: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> WebhookConfig:
        if not isinstance(data, dict):
            return cls()
        return cls(
            enabled=bool(data.get("enabled", False)),
            webhook_url=str(data.get("webhookUrl") or ""),
            webhook_url_secret_ref=SecretReference.from_dict(data.get("webhookUrlSecretRef")),
            channel=str(data.get("channel") or ""),
            notify_on_start=bool(data.get("notifyOnStart", False)),
            notify_on_complete=bool(data.get("notifyOnComplete", True)),
        )


@dataclass(frozen=True)
class NotificationConfig:
    slack: WebhookConfig = field(default_factory=WebhookConfig)
    google_chat: WebhookConfig = field(default_factory=WebhookConfig)

    @classmethod
    def from_dict(cls, data: Any) -> NotificationConfig:
        if not isinstance(data, dict):
            return cls()
        return cls(
            slack=WebhookConfig.from_dict(data.get("slack")),
            google_chat=WebhookConfig.from_dict(data.get("googleChat")),
        )


@dataclass(frozen=True)
class RemediationPolicy:
    """Parsed ``RemediationPolicy`` custom resource."""

    namespace: str
    name: str
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    event_selectors: tuple[EventSelector, ...] = ()
    mcp_endpoint: str = ""
    mcp_tool: str = DEFAULT_MCP_TOOL
    mcp_auth_secret_ref: SecretReference | None = None
    mode: str = DEFAULT_MODE
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    max_risk_level: str = DEFAULT_MAX_RISK_LEVEL
    rate_limiting: RateLimiting = field(default_factory=RateLimiting)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    persistence_enabled: bool = True
    has_status: bool = False

    @property
    def key(self) -> str:
        """``namespace/name`` identity used in logs, metrics and stores."""
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> RemediationPolicy:
        """Parse a RemediationPolicy object as returned by CustomObjectsApi."""
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status")
        selectors = spec.get("eventSelectors") or []
        persistence = spec.get("persistence") or {}
        confidence = _opt_float(spec.get("confidenceThreshold"))

        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            uid=str(metadata.get("uid") or ""),
            resource_version=str(metadata.get("resourceVersion") or ""),
            generation=_int_or(metadata.get("generation"), 0),
            event_selectors=tuple(EventSelector.from_dict(s) for s in selectors if isinstance(s, dict)),
            mcp_endpoint=str(spec.get("mcpEndpoint") or ""),
            mcp_tool=str(spec.get("mcpTool") or DEFAULT_MCP_TOOL),
            mcp_auth_secret_ref=SecretReference.from_dict(spec.get("mcpAuthSecretRef")),
            mode=str(spec.get("mode") or DEFAULT_MODE),
            confidence_threshold=DEFAULT_CONFIDENCE_THRESHOLD if confidence is None else confidence,
            max_risk_level=str(spec.get("maxRiskLevel") or DEFAULT_MAX_RISK_LEVEL),
            rate_limiting=RateLimiting.from_dict(spec.get("rateLimiting")),
            notifications=NotificationConfig.from_dict(spec.get("notifications")),
            persistence_enabled=bool(persistence.get("enabled", True)) if isinstance(persistence, dict) else True,
            has_status=isinstance(status, dict) and bool(status),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Return every configuration problem found; empty when valid."""
        problems: list[str] = []

        if not self.event_selectors:
            problems.append("spec.eventSelectors must contain at least one selector")
        if not self.mcp_endpoint:
            problems.append("spec.mcpEndpoint is required")
        elif not self.mcp_endpoint.startswith(("http://", "https://")):
            problems.append(f"spec.mcpEndpoint must be an http(s) URL, got {self.mcp_endpoint!r}")

        _check_mode(self.mode, "spec.mode", problems)
        _check_risk(self.max_risk_level, "spec.maxRiskLevel", problems)
        _check_confidence(self.confidence_threshold, "spec.confidenceThreshold", problems)

        for i, selector in enumerate(self.event_selectors):
            prefix = f"spec.eventSelectors[{i}]"
            if selector.mode:
                _check_mode(selector.mode, f"{prefix}.mode", problems)
            if selector.max_risk_level:
                _check_risk(selector.max_risk_level, f"{prefix}.maxRiskLevel", problems)
            if selector.confidence_threshold is not None:
                _check_confidence(selector.confidence_threshold, f"{prefix}.confidenceThreshold", problems)

        if self.rate_limiting.events_per_minute < 0:
            problems.append("spec.rateLimiting.eventsPerMinute must not be negative")
        if self.rate_limiting.cooldown_minutes < 0:
            problems.append("spec.rateLimiting.cooldownMinutes must not be negative")

        _check_secret_ref(self.mcp_auth_secret_ref, "spec.mcpAuthSecretRef", problems)
        _check_webhook(self.notifications.slack, "slack", SLACK_WEBHOOK_PREFIX, problems)
        _check_webhook(self.notifications.google_chat, "googleChat", GOOGLE_CHAT_WEBHOOK_PREFIX, problems)
        return problems

    def require_valid(self) -> None:
        """Raise :class:`PolicyValidationError` if :meth:`validate` finds problems."""
        problems = self.validate()
        if problems:
            raise PolicyValidationError(problems)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _opt_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int_or(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _check_mode(value: str, path: str, problems: list[str]) -> None:
    if value not in {m.value for m in Mode}:
        problems.append(f"{path} must be one of manual, automatic; got {value!r}")


def _check_risk(value: str, path: str, problems: list[str]) -> None:
    if value not in {r.value for r in RiskLevel}:
        problems.append(f"{path} must be one of low, medium, high; got {value!r}")


def _check_confidence(value: float, path: str, problems: list[str]) -> None:
    if not 0.0 <= value <= 1.0:
        problems.append(f"{path} must be between 0.0 and 1.0; got {value}")


def _check_secret_ref(ref: SecretReference | None, path: str, problems: list[str]) -> None:
    if ref is None:
        return
    if not ref.name:
        problems.append(f"{path}.name must not be empty")
    if not ref.key:
        problems.append(f"{path}.key must not be empty")


def _check_webhook(cfg: WebhookConfig, label: str, prefix: str, problems: list[str]) -> None:
    if not cfg.enabled:
        return
    path = f"spec.notifications.{label}"
    _check_secret_ref(cfg.webhook_url_secret_ref, f"{path}.webhookUrlSecretRef", problems)
    if cfg.webhook_url and cfg.webhook_url_secret_ref is None and not cfg.webhook_url.startswith(prefix):
        problems.append(f"{path}.webhookUrl must start with {prefix}")
