"""Event reaction pipeline.

Wires the per-event flow::

    EventRecord
      -> first matching policy/selector (drop if none)
      -> dedup token check (drop if already seen)
      -> owner resolution -> rate-limit key
      -> cooldown check-and-set (count as rate limited if denied)
      -> "EventMatched" Kubernetes Event on the policy
      -> "started" notification (fire-and-forget)
      -> backend dispatch with retry (bounded concurrency)
      -> outcome Kubernetes Event, status counters
      -> "completed" notification

:meth:`RemediationPipeline.handle_event` is registered as the event
watcher callback.  It does the cheap matching inline and hands the rest
to a tracked task so a slow backend never stalls the watch stream.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from kubemend.models.config import PipelineConfig
from kubemend.models.events import EventRecord
from kubemend.models.policy import RemediationPolicy
from kubemend.notifications.dispatcher import NotificationDispatcher
from kubemend.notifications.manager import NotificationKind
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import (
    event_handler_errors_total,
    events_deduplicated_total,
    events_matched_total,
    events_rate_limited_total,
    remediations_in_flight,
)
from kubemend.recorder import (
    NORMAL,
    REASON_EVENT_MATCHED,
    REASON_REMEDIATION_FAILED,
    REASON_REQUEST_FAILED,
    REASON_REQUEST_SUCCEEDED,
    REASON_STATUS_UPDATE_FAILED,
    WARNING,
    EventRecorder,
)
from kubemend.remediation.cooldown import CooldownStore
from kubemend.remediation.dispatcher import DispatchResult, RemediationDispatcher, build_request
from kubemend.remediation.owner import OwnerResolver, build_rate_limit_key
from kubemend.remediation.selector import SelectorMatch, first_matching_policy
from kubemend.remediation.status import StatusAggregator, StatusUpdateError

_log = get_logger("pipeline")

PolicySource = Callable[[], Iterable[RemediationPolicy]]


class DedupCache:
    """Remembers processed event tokens for a TTL.

    Best-effort within one process lifetime; a restart forgets everything.
    """

    def __init__(self, ttl: float = 600.0) -> None:
        self._ttl = timedelta(seconds=ttl)
        self._seen: dict[str, datetime] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def check_and_mark(self, token: str, now: datetime) -> bool:
        """Return True if *token* is new (and remember it), False if a duplicate."""
        seen_at = self._seen.get(token)
        if seen_at is not None and now - seen_at < self._ttl:
            return False
        self._seen[token] = now
        return True

    def purge_expired(self, now: datetime) -> int:
        expired = [t for t, at in self._seen.items() if now - at >= self._ttl]
        for token in expired:
            del self._seen[token]
        return len(expired)


class RemediationPipeline:
    """Reacts to cluster events on behalf of the active policies.

    Args:
        policies: Returns active, valid policies in evaluation order.
        owners: Resolves rate-limit grouping owners.
        cooldowns: Shared cooldown store.
        dispatcher: Backend client.
        notifier: Start/complete notifications.
        aggregator: Status writer.
        config: Concurrency and dedup settings.
        now_fn: Clock, injectable for tests.
        recorder: Optional; writes the audit trail as Kubernetes Events on the policy.
    """

    def __init__(
        self,
        policies: PolicySource,
        owners: OwnerResolver,
        cooldowns: CooldownStore,
        dispatcher: RemediationDispatcher,
        notifier: NotificationDispatcher,
        aggregator: StatusAggregator,
        config: PipelineConfig | None = None,
        now_fn: Callable[[], datetime] | None = None,
        recorder: EventRecorder | None = None,
    ) -> None:
        self._policies = policies
        self._owners = owners
        self._cooldowns = cooldowns
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._aggregator = aggregator
        self._config = config or PipelineConfig()
        self._now = now_fn or (lambda: datetime.now(tz=UTC))
        self._recorder = recorder

        self.dedup = DedupCache(ttl=self._config.dedup_ttl)
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._accepting = True

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_event(self, record: EventRecord) -> None:
        """Match *record* and schedule its processing.  Never raises."""
        if not self._accepting:
            return
        try:
            match = first_matching_policy(self._policies(), record)
            if match is None:
                return
            if not self.dedup.check_and_mark(record.dedup_key, self._now()):
                events_deduplicated_total.inc()
                _log.debug("event_duplicate", event_key=record.dedup_key)
                return
            events_matched_total.labels(policy=match.policy.key).inc()
            _log.info(
                "event_matched",
                policy=match.policy.key,
                selector=match.index,
                event_type=record.type,
                reason=record.reason,
                kind=record.involved_object.kind,
                name=record.involved_object.name,
                namespace=record.namespace,
            )
        except Exception as exc:
            event_handler_errors_total.inc()
            _log.error("event_handler_error", event_key=record.dedup_key, error=str(exc), exc_info=True)
            return
        self._spawn(self._process(match, record), name=f"remediate:{record.dedup_key}")

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, match: SelectorMatch, record: EventRecord) -> None:
        policy = match.policy
        try:
            owner = await self._owners.resolve(record.involved_object)
            key = build_rate_limit_key(policy.namespace, policy.name, record, owner)
            decision = self._cooldowns.check_policy(key, policy.rate_limiting, now=self._now())
            if not decision.allowed:
                events_rate_limited_total.labels(policy=policy.key).inc()
                _log.info("event_rate_limited", policy=policy.key, key=key, reason=decision.reason)
                await self._write_status(self._aggregator.record_rate_limited(policy), policy)
                return

            obj = record.involved_object
            await self._emit(
                policy,
                NORMAL,
                REASON_EVENT_MATCHED,
                f"Policy '{policy.name}' matched {record.type}/{record.reason} event "
                f"for {obj.kind} {obj.name}: {record.message}",
            )

            request = build_request(record, match.settings)
            self._spawn(
                self._notify(NotificationKind.START, policy, record, request),
                name=f"notify-start:{record.dedup_key}",
            )

            async with self._semaphore:
                remediations_in_flight.inc()
                try:
                    result = await self._dispatcher.dispatch(policy, record, match.settings, request=request)
                finally:
                    remediations_in_flight.dec()

            await self._audit(policy, record, result)
            await self._record(policy, result)
            await self._notify(NotificationKind.COMPLETE, policy, record, request, result)
        except Exception as exc:
            event_handler_errors_total.inc()
            _log.error(
                "event_handler_error",
                policy=policy.key,
                event_key=record.dedup_key,
                error=str(exc),
                exc_info=True,
            )

    async def _record(self, policy: RemediationPolicy, result: DispatchResult) -> None:
        if result.success:
            await self._write_status(self._aggregator.record_success(policy), policy)
        else:
            await self._write_status(self._aggregator.record_failure(policy, result.error), policy)

    async def _audit(self, policy: RemediationPolicy, record: EventRecord, result: DispatchResult) -> None:
        if result.success:
            await self._emit(
                policy,
                NORMAL,
                REASON_REQUEST_SUCCEEDED,
                f"Remediation succeeded for {record.type}/{record.reason} event: "
                f"{result.response.result_message()}",
            )
        elif result.response.synthesized:
            await self._emit(
                policy,
                WARNING,
                REASON_REQUEST_FAILED,
                f"Failed to send remediation request to {policy.mcp_endpoint}: {result.error}",
            )
        else:
            await self._emit(policy, WARNING, REASON_REMEDIATION_FAILED, f"Remediation failed: {result.error}")

    async def _emit(self, policy: RemediationPolicy, event_type: str, reason: str, message: str) -> None:
        if self._recorder is not None:
            await self._recorder.record(policy, event_type, reason, message)

    async def _notify(
        self,
        kind: NotificationKind,
        policy: RemediationPolicy,
        record: EventRecord,
        request: Any,
        result: DispatchResult | None = None,
    ) -> None:
        try:
            await self._notifier.notify(
                kind, policy, record, request, result.response if result is not None else None
            )
        except Exception as exc:
            _log.warning("notification_error", policy=policy.key, kind=kind.value, error=str(exc))

    async def _write_status(self, update: Coroutine[Any, Any, None], policy: RemediationPolicy) -> None:
        try:
            await update
        except StatusUpdateError as exc:
            _log.warning("status_update_failed", policy=policy.key, error=str(exc))
            await self._emit(
                policy,
                WARNING,
                REASON_STATUS_UPDATE_FAILED,
                f"Failed to update status after processing event: {exc}",
            )

    # ------------------------------------------------------------------
    # Maintenance / shutdown
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        return self.dedup.purge_expired(self._now())

    async def drain(self, timeout: float = 30.0) -> bool:
        """Stop accepting events and wait for in-flight work.

        Returns True when everything finished; leftover tasks are
        cancelled after *timeout*.
        """
        self._accepting = False
        if not self._tasks:
            return True
        _log.info("pipeline_draining", in_flight=len(self._tasks), timeout_s=timeout)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        still_pending: set[asyncio.Task[Any]] = set()
        # Processing tasks may spawn notification tasks while we wait
        while active := {t for t in self._tasks if not t.done()}:
            remaining = deadline - loop.time()
            if remaining <= 0:
                still_pending = active
                break
            _, still_pending = await asyncio.wait(active, timeout=remaining)
            if still_pending:
                break
        if not still_pending:
            return True
        _log.warning("pipeline_drain_timeout", abandoned=len(still_pending))
        for task in still_pending:
            task.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)
        return False
