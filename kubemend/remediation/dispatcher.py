"""Remediation backend client.

Builds the request for a matched event, POSTs it to the policy's
endpoint and drives the retry state machine:

- 2xx with ``success: true`` (or a non-JSON 2xx body) -> success
- 2xx with ``success: false`` -> failure, not retried (the backend ran
  and said no)
- network error, timeout, 408/425/429, 5xx -> retried with exponential
  backoff and jitter up to ``max_attempts``
- any other 4xx -> failure, not retried

Only the terminal outcome is reported; intermediate attempts are logged
and counted in metrics.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from kubemend.kube import SecretResolutionError, read_secret_value
from kubemend.models.config import RemediationConfig
from kubemend.models.events import EventRecord
from kubemend.models.policy import Mode, RemediationPolicy
from kubemend.models.remediation import RemediationRequest, RemediationResponse
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import (
    remediation_attempts_total,
    remediation_duration_seconds,
    remediation_requests_total,
)
from kubemend.remediation.retry import Outcome, RetryPolicy, RetryState, Terminal
from kubemend.remediation.selector import EffectiveSettings

_log = get_logger("remediation_dispatcher")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_ISSUE_MAX_CHARS: int = 2000
_ERROR_BODY_MAX_CHARS: int = 512
_RETRYABLE_4XX: frozenset[int] = frozenset({408, 425, 429})

Sleep = Callable[[float], Awaitable[None]]


def _user_agent() -> str:
    from kubemend import __version__

    return f"kubemend/{__version__}"


def describe_issue(event: EventRecord) -> str:
    """Human-readable issue text sent to the backend.

    ``Pod web-0 in namespace prod has a BackOff event: Back-off restarting``;
    non-core kinds carry their apiVersion (``SQL.devopstoolkit.live/v1beta1``).
    """
    ref = event.involved_object
    if ref.kind and ref.name:
        resource_type = ref.kind
        if ref.api_version and ref.api_version != "v1":
            resource_type = f"{ref.kind}.{ref.api_version}"
        desc = f"{resource_type} {ref.name}"
        if ref.namespace:
            desc += f" in namespace {ref.namespace}"
        desc += f" has a {event.reason} event" if event.reason else " has an issue"
        if event.message:
            desc += f": {event.message}"
    else:
        desc = f"Kubernetes event: {event.message}"
    if len(desc) > _ISSUE_MAX_CHARS:
        desc = desc[: _ISSUE_MAX_CHARS - 3] + "..."
    return desc


def build_request(event: EventRecord, settings: EffectiveSettings) -> RemediationRequest:
    if settings.mode == Mode.AUTOMATIC:
        return RemediationRequest(
            issue=describe_issue(event),
            mode=settings.mode,
            confidence_threshold=settings.confidence_threshold,
            max_risk_level=settings.max_risk_level,
        )
    return RemediationRequest(issue=describe_issue(event), mode=settings.mode)


def classify_status(status_code: int) -> Outcome:
    """Map an HTTP status to a retry outcome."""
    if 200 <= status_code < 300:
        return Outcome.SUCCESS
    if status_code >= 500 or status_code in _RETRYABLE_4XX:
        return Outcome.RETRYABLE
    return Outcome.FATAL


@dataclass(frozen=True)
class DispatchResult:
    """Terminal outcome of one remediation dispatch."""

    request: RemediationRequest
    response: RemediationResponse
    attempts: int
    terminal: Terminal
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return self.terminal is Terminal.SUCCEEDED and self.response.success

    @property
    def error(self) -> str:
        return "" if self.success else self.response.error_message()


class RemediationDispatcher:
    """Sends remediation requests with bounded retry.

    Uses a persistent ``httpx.AsyncClient``.  The caller is responsible for
    calling :meth:`stop` during shutdown.

    Args:
        core_api: ``CoreV1Api`` used to read bearer-token Secrets.
        config: Attempt ceiling, backoff bounds and per-attempt timeout.
        client: Optional pre-built HTTP client.
        sleep: Awaitable used between attempts, injectable for tests.
        rng: Jitter source returning floats in [0, 1).
    """

    def __init__(
        self,
        core_api: Any,
        config: RemediationConfig | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] | None = None,
    ) -> None:
        self._core = core_api
        self._config = config or RemediationConfig()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(float(self._config.timeout_seconds)),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
        )
        self._sleep = sleep
        self._retry_policy = RetryPolicy(
            max_attempts=self._config.max_attempts,
            base_delay=self._config.base_delay_ms / 1000,
            max_delay=self._config.max_delay_ms / 1000,
        )
        self._rng = rng

    async def stop(self) -> None:
        await self._client.aclose()

    async def resolve_token(self, policy: RemediationPolicy) -> str:
        """Bearer token from ``mcpAuthSecretRef``; empty when none is configured."""
        ref = policy.mcp_auth_secret_ref
        if ref is None:
            return ""
        return await read_secret_value(self._core, policy.namespace, ref.name, ref.key)

    async def dispatch(
        self,
        policy: RemediationPolicy,
        event: EventRecord,
        settings: EffectiveSettings,
        request: RemediationRequest | None = None,
    ) -> DispatchResult:
        """Send one remediation request and return its terminal outcome.

        Never raises for backend or credential problems; they come back as a
        failed :class:`DispatchResult`.
        """
        request = request or build_request(event, settings)
        started = time.monotonic()

        try:
            token = await self.resolve_token(policy)
        except SecretResolutionError as exc:
            _log.error("remediation_credentials_unavailable", policy=policy.key, error=str(exc))
            remediation_requests_total.labels(outcome="credential_error").inc()
            return DispatchResult(
                request=request,
                response=RemediationResponse.failure("CREDENTIALS", str(exc)),
                attempts=0,
                terminal=Terminal.FAILED,
            )

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "User-Agent": _user_agent(),
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        payload = request.to_payload()
        kwargs: dict[str, Any] = {"rng": self._rng} if self._rng is not None else {}
        state = RetryState(self._retry_policy, **kwargs)
        response = RemediationResponse.failure("NOT_SENT", "no attempt made")

        while True:
            attempt = state.begin_attempt()
            outcome, response = await self._attempt(policy, payload, headers)
            remediation_attempts_total.labels(result=outcome.value).inc()
            step = state.record(outcome)
            if step.done:
                break
            _log.warning(
                "remediation_attempt_failed",
                policy=policy.key,
                attempt=attempt,
                max_attempts=self._retry_policy.max_attempts,
                retry_in_s=round(step.delay, 3),
                error=response.error_message(),
            )
            await self._sleep(step.delay)

        duration = time.monotonic() - started
        terminal = state.terminal or Terminal.FAILED
        remediation_duration_seconds.observe(duration)
        remediation_requests_total.labels(outcome=terminal.value).inc()

        if terminal is Terminal.SUCCEEDED:
            _log.info(
                "remediation_succeeded",
                policy=policy.key,
                tool=policy.mcp_tool,
                mode=request.mode,
                attempts=state.attempts,
                executed=response.executed,
                message=response.result_message(),
            )
        else:
            _log.error(
                "remediation_failed",
                policy=policy.key,
                tool=policy.mcp_tool,
                mode=request.mode,
                attempts=state.attempts,
                terminal=terminal.value,
                error=response.error_message(),
            )
        return DispatchResult(
            request=request,
            response=response,
            attempts=state.attempts,
            terminal=terminal,
            duration_s=duration,
        )

    async def _attempt(
        self,
        policy: RemediationPolicy,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> tuple[Outcome, RemediationResponse]:
        """One HTTP round trip, classified."""
        try:
            resp = await self._client.post(policy.mcp_endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            return Outcome.RETRYABLE, RemediationResponse.failure("TIMEOUT", f"request timed out: {exc}")
        except httpx.TransportError as exc:
            return Outcome.RETRYABLE, RemediationResponse.failure("NETWORK", f"request failed: {exc}")

        outcome = classify_status(resp.status_code)
        body = resp.text
        if outcome is not Outcome.SUCCESS:
            return outcome, RemediationResponse.failure(
                str(resp.status_code),
                f"HTTP {resp.status_code}: {body[:_ERROR_BODY_MAX_CHARS]}",
            )

        try:
            data = json.loads(body) if body else None
        except json.JSONDecodeError:
            _log.info("remediation_response_not_json", policy=policy.key, size=len(body))
            return Outcome.SUCCESS, RemediationResponse.plain_text(body)

        if not isinstance(data, dict):
            return Outcome.SUCCESS, RemediationResponse.plain_text(body)

        parsed = RemediationResponse.from_dict(data)
        if not parsed.success:
            return Outcome.FATAL, parsed
        return Outcome.SUCCESS, parsed
