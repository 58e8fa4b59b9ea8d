"""Unit tests for kubemend.remediation.pipeline."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from kubemend.models.config import PipelineConfig
from kubemend.models.events import EventRecord, ObjectReference
from kubemend.models.policy import EventSelector, RateLimiting, RemediationPolicy
from kubemend.models.remediation import RemediationError, RemediationResponse
from kubemend.notifications.manager import NotificationKind
from kubemend.recorder import (
    REASON_EVENT_MATCHED,
    REASON_REMEDIATION_FAILED,
    REASON_REQUEST_FAILED,
    REASON_REQUEST_SUCCEEDED,
    REASON_STATUS_UPDATE_FAILED,
)
from kubemend.remediation.cooldown import CooldownStore
from kubemend.remediation.dispatcher import DispatchResult
from kubemend.remediation.owner import OwnerRef
from kubemend.remediation.pipeline import DedupCache, RemediationPipeline
from kubemend.remediation.retry import Terminal
from kubemend.remediation.status import StatusUpdateError

_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    reason: str = "FailedScheduling",
    name: str = "web-0.17a",
    resource_version: str = "100",
) -> EventRecord:
    return EventRecord(
        type="Warning",
        reason=reason,
        message="0/3 nodes are available",
        namespace="prod",
        name=name,
        involved_object=ObjectReference(kind="Pod", name="web-0", namespace="prod"),
        first_seen=_NOW,
        last_seen=_NOW,
        resource_version=resource_version,
    )


def _make_policy(name: str = "scheduling", reason: str = "FailedScheduling", **kwargs: object) -> RemediationPolicy:
    return RemediationPolicy(
        namespace="ops",
        name=name,
        event_selectors=(EventSelector(type="Warning", reason=reason),),
        mcp_endpoint="http://mcp:3456",
        **kwargs,  # type: ignore[arg-type]
    )


def _result(success: bool = True) -> DispatchResult:
    if success:
        response = RemediationResponse(success=True, result={"message": "ok"})
        terminal = Terminal.SUCCEEDED
    else:
        response = RemediationResponse.failure("503", "HTTP 503: unavailable")
        terminal = Terminal.EXHAUSTED
    return DispatchResult(request=MagicMock(), response=response, attempts=1, terminal=terminal)


class _Harness:
    def __init__(self, policies: list[RemediationPolicy], result: DispatchResult | None = None) -> None:
        self.policies = policies
        self.owners = MagicMock()
        self.owners.resolve = AsyncMock(return_value=OwnerRef(kind="pod", name="web-0"))
        self.cooldowns = CooldownStore()
        self.dispatcher = MagicMock()
        self.dispatcher.dispatch = AsyncMock(return_value=result or _result())
        self.notifier = MagicMock()
        self.notifier.notify = AsyncMock(return_value=None)
        self.aggregator = MagicMock()
        self.aggregator.record_success = AsyncMock()
        self.aggregator.record_failure = AsyncMock()
        self.aggregator.record_rate_limited = AsyncMock()
        self.recorder = MagicMock()
        self.recorder.record = AsyncMock()
        self.now = _NOW
        self.pipeline = RemediationPipeline(
            policies=lambda: self.policies,
            owners=self.owners,
            cooldowns=self.cooldowns,
            dispatcher=self.dispatcher,
            notifier=self.notifier,
            aggregator=self.aggregator,
            config=PipelineConfig(max_concurrency=2, dedup_ttl=600.0),
            now_fn=lambda: self.now,
            recorder=self.recorder,
        )

    async def run(self, *events: EventRecord) -> None:
        for event in events:
            await self.pipeline.handle_event(event)
        assert await self.pipeline.drain(timeout=5.0) is True

    def audit_reasons(self) -> list[str]:
        return [c.args[2] for c in self.recorder.record.await_args_list]


# ---------------------------------------------------------------------------
# DedupCache
# ---------------------------------------------------------------------------


class TestDedupCache:
    def test_first_seen_is_new(self) -> None:
        cache = DedupCache(ttl=60)
        assert cache.check_and_mark("a", _NOW) is True
        assert cache.check_and_mark("a", _NOW + timedelta(seconds=10)) is False

    def test_expired_token_is_new_again(self) -> None:
        cache = DedupCache(ttl=60)
        cache.check_and_mark("a", _NOW)
        assert cache.check_and_mark("a", _NOW + timedelta(seconds=61)) is True

    def test_purge(self) -> None:
        cache = DedupCache(ttl=60)
        cache.check_and_mark("a", _NOW)
        cache.check_and_mark("b", _NOW + timedelta(seconds=50))
        assert cache.purge_expired(_NOW + timedelta(seconds=70)) == 1
        assert len(cache) == 1


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestHandleEvent:
    async def test_matching_event_dispatched_once(self) -> None:
        policy = _make_policy()
        h = _Harness([policy])

        await h.run(_make_event())

        h.dispatcher.dispatch.assert_awaited_once()
        args = h.dispatcher.dispatch.call_args
        assert args.args[0] is policy
        request = args.kwargs["request"]
        assert request.issue == "Pod web-0 in namespace prod has a FailedScheduling event: 0/3 nodes are available"
        assert request.mode == "manual"
        h.aggregator.record_success.assert_awaited_once_with(policy)

    async def test_non_matching_event_ignored(self) -> None:
        h = _Harness([_make_policy()])
        await h.run(_make_event(reason="Pulled"))
        h.dispatcher.dispatch.assert_not_called()
        h.owners.resolve.assert_not_called()

    async def test_duplicate_token_processed_once(self) -> None:
        h = _Harness([_make_policy(rate_limiting=RateLimiting(0, 0))])
        event = _make_event()
        await h.run(event, event)
        assert h.dispatcher.dispatch.await_count == 1

    async def test_new_resource_version_is_a_new_event(self) -> None:
        h = _Harness([_make_policy(rate_limiting=RateLimiting(0, 0))])
        await h.run(_make_event(resource_version="1"), _make_event(resource_version="2"))
        assert h.dispatcher.dispatch.await_count == 2

    async def test_first_policy_wins(self) -> None:
        first = _make_policy(name="a")
        second = _make_policy(name="b")
        h = _Harness([first, second])
        await h.run(_make_event())
        assert h.dispatcher.dispatch.await_count == 1
        assert h.dispatcher.dispatch.call_args.args[0] is first

    async def test_cooldown_denies_second_event(self) -> None:
        policy = _make_policy(rate_limiting=RateLimiting(events_per_minute=10, cooldown_minutes=5))
        h = _Harness([policy])

        await h.run(_make_event(name="e1", resource_version="1"), _make_event(name="e2", resource_version="2"))

        assert h.dispatcher.dispatch.await_count == 1
        h.aggregator.record_rate_limited.assert_awaited_once_with(policy)

    async def test_rate_limit_key_uses_owner(self) -> None:
        policy = _make_policy(rate_limiting=RateLimiting(events_per_minute=10, cooldown_minutes=5))
        h = _Harness([policy])
        h.owners.resolve = AsyncMock(return_value=OwnerRef(kind="deployment", name="web"))

        await h.run(_make_event())

        snapshot = h.cooldowns.snapshot("ops/scheduling/", now=_NOW)
        assert list(snapshot) == ["ops/scheduling/prod/deployment:web/FailedScheduling"]

    async def test_failure_recorded(self) -> None:
        policy = _make_policy()
        h = _Harness([policy], result=_result(success=False))
        await h.run(_make_event())
        h.aggregator.record_failure.assert_awaited_once_with(policy, "HTTP 503: unavailable")
        h.aggregator.record_success.assert_not_called()

    async def test_start_and_complete_notifications(self) -> None:
        h = _Harness([_make_policy()])
        await h.run(_make_event())
        kinds = sorted(c.args[0].value for c in h.notifier.notify.call_args_list)
        assert kinds == [NotificationKind.COMPLETE.value, NotificationKind.START.value]
        complete = next(c for c in h.notifier.notify.call_args_list if c.args[0] is NotificationKind.COMPLETE)
        assert complete.args[4].success is True

    async def test_notification_error_does_not_break_flow(self) -> None:
        policy = _make_policy()
        h = _Harness([policy])
        h.notifier.notify = AsyncMock(side_effect=RuntimeError("boom"))
        await h.run(_make_event())
        h.aggregator.record_success.assert_awaited_once_with(policy)

    async def test_status_error_swallowed(self) -> None:
        h = _Harness([_make_policy()])
        h.aggregator.record_success = AsyncMock(side_effect=StatusUpdateError("conflict"))
        await h.run(_make_event())
        assert h.notifier.notify.await_count == 2

    async def test_owner_resolution_error_contained(self) -> None:
        h = _Harness([_make_policy()])
        h.owners.resolve = AsyncMock(side_effect=RuntimeError("api down"))
        await h.run(_make_event())
        h.dispatcher.dispatch.assert_not_called()

    async def test_policy_source_error_contained(self) -> None:
        h = _Harness([])
        h.pipeline._policies = MagicMock(side_effect=RuntimeError("boom"))
        await h.pipeline.handle_event(_make_event())
        assert h.pipeline.in_flight == 0


class TestAuditEvents:
    async def test_success_trail(self) -> None:
        policy = _make_policy()
        h = _Harness([policy])

        await h.run(_make_event())

        assert h.audit_reasons() == [REASON_EVENT_MATCHED, REASON_REQUEST_SUCCEEDED]
        matched, succeeded = h.recorder.record.await_args_list
        assert matched.args[0] is policy
        assert matched.args[1] == "Normal"
        assert matched.args[3] == (
            "Policy 'scheduling' matched Warning/FailedScheduling event for Pod web-0: 0/3 nodes are available"
        )
        assert succeeded.args[3] == "Remediation succeeded for Warning/FailedScheduling event: ok"

    async def test_request_failure(self) -> None:
        h = _Harness([_make_policy()], result=_result(success=False))
        await h.run(_make_event())
        assert h.audit_reasons() == [REASON_EVENT_MATCHED, REASON_REQUEST_FAILED]
        failed = h.recorder.record.await_args
        assert failed.args[1] == "Warning"
        assert failed.args[3] == "Failed to send remediation request to http://mcp:3456: HTTP 503: unavailable"

    async def test_backend_reported_failure(self) -> None:
        response = RemediationResponse(success=False, error=RemediationError(code="E_TOOL", message="pod not found"))
        result = DispatchResult(request=MagicMock(), response=response, attempts=1, terminal=Terminal.FAILED)
        h = _Harness([_make_policy()], result=result)
        await h.run(_make_event())
        assert h.audit_reasons() == [REASON_EVENT_MATCHED, REASON_REMEDIATION_FAILED]
        assert "pod not found" in h.recorder.record.await_args.args[3]

    async def test_rate_limited_event_not_recorded_as_matched(self) -> None:
        policy = _make_policy(rate_limiting=RateLimiting(events_per_minute=10, cooldown_minutes=5))
        h = _Harness([policy])
        await h.run(_make_event(name="e1", resource_version="1"), _make_event(name="e2", resource_version="2"))
        assert h.audit_reasons().count(REASON_EVENT_MATCHED) == 1

    async def test_status_update_failure(self) -> None:
        h = _Harness([_make_policy()])
        h.aggregator.record_success = AsyncMock(side_effect=StatusUpdateError("conflict"))
        await h.run(_make_event())
        assert h.audit_reasons()[-1] == REASON_STATUS_UPDATE_FAILED
        assert "conflict" in h.recorder.record.await_args.args[3]


class TestDrain:
    async def test_events_ignored_after_drain(self) -> None:
        h = _Harness([_make_policy()])
        assert await h.pipeline.drain() is True
        await h.pipeline.handle_event(_make_event())
        assert h.pipeline.in_flight == 0
        h.dispatcher.dispatch.assert_not_called()

    async def test_drain_waits_for_in_flight(self) -> None:
        h = _Harness([_make_policy()])
        gate = asyncio.Event()

        async def slow_dispatch(*args: object, **kwargs: object) -> DispatchResult:
            await gate.wait()
            return _result()

        h.dispatcher.dispatch = AsyncMock(side_effect=slow_dispatch)
        await h.pipeline.handle_event(_make_event())
        await asyncio.sleep(0)
        assert h.pipeline.in_flight >= 1

        asyncio.get_running_loop().call_later(0.01, gate.set)
        assert await h.pipeline.drain(timeout=5.0) is True
        h.aggregator.record_success.assert_awaited_once()

    async def test_drain_timeout_cancels(self) -> None:
        h = _Harness([_make_policy()])

        async def hang(*args: object, **kwargs: object) -> DispatchResult:
            await asyncio.sleep(60)
            return _result()

        h.dispatcher.dispatch = AsyncMock(side_effect=hang)
        await h.pipeline.handle_event(_make_event())
        assert await h.pipeline.drain(timeout=0.05) is False
        assert h.pipeline.in_flight == 0
