"""FastAPI application factory."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from kubemend.api.routes import router
from kubemend.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")


def create_app(
    policy_store: Any,
    cooldowns: Any,
    persistence: Any = None,
    shutdown: asyncio.Event | None = None,
) -> FastAPI:
    """Build the REST app with the controller's components on ``app.state``.

    Args:
        policy_store: :class:`~kubemend.controller.PolicyStore`.
        cooldowns: :class:`~kubemend.remediation.cooldown.CooldownStore`.
        persistence: Optional cooldown persistence, for backoff reporting.
        shutdown: Set once the controller starts stopping; health turns 503.
    """
    from kubemend import __version__

    app = FastAPI(
        title="KubeMend",
        version=__version__,
        description="Event-driven remediation controller for Kubernetes.",
    )
    app.state.policy_store = policy_store
    app.state.cooldowns = cooldowns
    app.state.persistence = persistence
    app.state.shutdown = shutdown or asyncio.Event()

    app.include_router(router, prefix="/api/v1")
    app.mount("/metrics", make_asgi_app())

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        _log.error("api_unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="INTERNAL_ERROR", detail="An unexpected error occurred.").model_dump(),
        )

    return app
