"""Pydantic response models for the KubeMend REST API.

All models use Pydantic v2 syntax.  Field descriptions are also used
by FastAPI to generate the OpenAPI spec.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    """Response body for ``GET /api/v1/health``."""

    status: str = Field(
        ...,
        description="``ok`` while running, ``shutting_down`` once a stop signal arrived.",
        examples=["ok", "shutting_down"],
    )
    version: str = Field(..., description="KubeMend version string.", examples=["0.1.0"])


class RateLimitSummary(BaseModel):
    events_per_minute: int = Field(..., ge=0)
    cooldown_minutes: int = Field(..., ge=0)


class PolicySummary(BaseModel):
    """One RemediationPolicy as the controller currently sees it."""

    namespace: str
    name: str
    valid: bool = Field(..., description="False when the policy failed validation and is ignored.")
    problems: list[str] = Field(default_factory=list, description="Validation problems, if any.")
    selectors: int = Field(..., ge=0, description="Number of event selectors.")
    mode: str = Field(..., examples=["manual", "automatic"])
    mcp_endpoint: str
    mcp_tool: str = Field(default="remediate", description="Tool the endpoint is asked to run.")
    rate_limiting: RateLimitSummary
    persistence_enabled: bool


class PolicyListResponse(BaseModel):
    """Response body for ``GET /api/v1/policies``."""

    count: int
    policies: list[PolicySummary]


class CooldownStatus(BaseModel):
    """Response body for ``GET /api/v1/cooldowns``."""

    tracked_keys: int = Field(..., ge=0, description="Rate-limit keys currently held in memory.")
    persistence_enabled: bool
    persistence_backoff_until: datetime | None = Field(
        None,
        description="Set while persistence is suspended after an entity-too-large rejection.",
    )


class ErrorResponse(BaseModel):
    """Standard error envelope returned for all 4xx and 5xx responses."""

    error: str = Field(..., description="Machine-readable error code.", examples=["INTERNAL_ERROR"])
    detail: str = Field(..., description="Human-readable explanation.")
