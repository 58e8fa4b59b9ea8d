"""FastAPI route handlers for the KubeMend REST API.

All routes are registered on a single APIRouter that ``app.py`` mounts
under the ``/api/v1`` prefix.  Handlers read shared components from
``request.app.state``: ``policy_store``, ``cooldowns``, ``persistence``
and ``shutdown`` (an :class:`asyncio.Event` set once stopping begins).
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from kubemend.api.schemas import (
    CooldownStatus,
    HealthStatus,
    PolicyListResponse,
    PolicySummary,
    RateLimitSummary,
)
from kubemend.controller import TrackedPolicy

router = APIRouter()


def _policy_to_schema(tracked: TrackedPolicy) -> PolicySummary:
    policy = tracked.policy
    return PolicySummary(
        namespace=policy.namespace,
        name=policy.name,
        valid=tracked.valid,
        problems=list(tracked.problems),
        selectors=len(policy.event_selectors),
        mode=policy.mode,
        mcp_endpoint=policy.mcp_endpoint,
        mcp_tool=policy.mcp_tool,
        rate_limiting=RateLimitSummary(
            events_per_minute=max(0, policy.rate_limiting.events_per_minute),
            cooldown_minutes=max(0, policy.rate_limiting.cooldown_minutes),
        ),
        persistence_enabled=policy.persistence_enabled,
    )


@router.get(
    "/health",
    response_model=HealthStatus,
    summary="Health check",
    description="Liveness probe.  Returns 503 once shutdown has started.",
)
async def get_health(request: Request) -> HealthStatus | JSONResponse:
    """``GET /api/v1/health``"""
    from kubemend import __version__

    shutdown = getattr(request.app.state, "shutdown", None)
    if shutdown is not None and shutdown.is_set():
        return JSONResponse(
            status_code=503,
            content=HealthStatus(status="shutting_down", version=__version__).model_dump(),
        )
    return HealthStatus(status="ok", version=__version__)


@router.get(
    "/policies",
    response_model=PolicyListResponse,
    summary="Known remediation policies",
)
async def get_policies(request: Request) -> PolicyListResponse:
    """``GET /api/v1/policies``"""
    store = request.app.state.policy_store
    policies = [_policy_to_schema(t) for t in store.all_policies()]
    return PolicyListResponse(count=len(policies), policies=policies)


@router.get(
    "/cooldowns",
    response_model=CooldownStatus,
    summary="Cooldown store state",
)
async def get_cooldowns(request: Request) -> CooldownStatus:
    """``GET /api/v1/cooldowns``"""
    cooldowns = request.app.state.cooldowns
    persistence = getattr(request.app.state, "persistence", None)
    backoff_until = None
    if persistence is not None and persistence.in_backoff():
        backoff_until = persistence.backoff_until
    return CooldownStatus(
        tracked_keys=len(cooldowns),
        persistence_enabled=persistence is not None and persistence.enabled,
        persistence_backoff_until=backoff_until,
    )
