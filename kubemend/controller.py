"""Policy store and reconciler.

The policy watcher feeds every add/modify/delete of a RemediationPolicy
into :class:`PolicyReconciler`, which validates the policy and checks that
its bearer-token Secret is readable, keeps the in-memory :class:`PolicyStore`
current, restores persisted cooldowns the first time the policy becomes
active and keeps the ``Ready`` condition in step.  Lifecycle changes are
also written as Kubernetes Events on the policy.  A periodic maintenance
pass re-reconciles every policy and purges expired dedup tokens and
cooldown entries.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from kubemend.kube import SecretResolutionError
from kubemend.models.policy import RemediationPolicy
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import policies_tracked
from kubemend.recorder import (
    NORMAL,
    REASON_POLICY_CREATED,
    REASON_STATUS_INITIALIZATION_FAILED,
    WARNING,
    EventRecorder,
)
from kubemend.remediation.cooldown import CooldownStore
from kubemend.remediation.persistence import CooldownPersistence
from kubemend.remediation.pipeline import RemediationPipeline
from kubemend.remediation.status import (
    REASON_CREDENTIAL_UNAVAILABLE,
    REASON_INVALID_CONFIGURATION,
    REASON_POLICY_VALID,
    StatusAggregator,
    StatusUpdateError,
)

_log = get_logger("controller")

TokenResolver = Callable[[RemediationPolicy], Awaitable[str]]


@dataclass(frozen=True)
class TrackedPolicy:
    policy: RemediationPolicy
    problems: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.problems


class PolicyStore:
    """In-memory view of every RemediationPolicy the controller knows about."""

    def __init__(self) -> None:
        self._policies: dict[str, TrackedPolicy] = {}

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, key: object) -> bool:
        return key in self._policies

    def put(self, policy: RemediationPolicy, problems: list[str] | tuple[str, ...] = ()) -> bool:
        """Store *policy*; returns True when it was not known before."""
        is_new = policy.key not in self._policies
        self._policies[policy.key] = TrackedPolicy(policy=policy, problems=tuple(problems))
        self._update_gauge()
        return is_new

    def delete(self, key: str) -> TrackedPolicy | None:
        tracked = self._policies.pop(key, None)
        self._update_gauge()
        return tracked

    def get(self, key: str) -> TrackedPolicy | None:
        return self._policies.get(key)

    def keys(self) -> set[str]:
        return set(self._policies)

    def all_policies(self) -> list[TrackedPolicy]:
        return [self._policies[k] for k in sorted(self._policies)]

    def active_policies(self) -> list[RemediationPolicy]:
        """Valid policies in deterministic ``namespace/name`` order."""
        return [t.policy for t in self.all_policies() if t.valid]

    def _update_gauge(self) -> None:
        valid = sum(1 for t in self._policies.values() if t.valid)
        policies_tracked.labels(valid="true").set(valid)
        policies_tracked.labels(valid="false").set(len(self._policies) - valid)


class PolicyReconciler:
    """Implements the policy watcher's handler protocol.

    Args:
        store: Policy store to keep current.
        aggregator: Writes the ``Ready`` condition and initial status.
        cooldowns: Cooldown store; a deleted policy's keys are dropped.
        persistence: Restores cooldowns the first time a policy is seen.
        pipeline: Optional; maintenance purges its dedup cache.
        resync_interval: Seconds between maintenance passes.
        resolve_token: Optional; reads a policy's bearer token, raising
            SecretResolutionError when it is unavailable.
        recorder: Optional; Kubernetes Events for lifecycle changes.
    """

    def __init__(
        self,
        store: PolicyStore,
        aggregator: StatusAggregator,
        cooldowns: CooldownStore,
        persistence: CooldownPersistence | None = None,
        pipeline: RemediationPipeline | None = None,
        resync_interval: float = 300.0,
        resolve_token: TokenResolver | None = None,
        recorder: EventRecorder | None = None,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._cooldowns = cooldowns
        self._persistence = persistence
        self.pipeline = pipeline
        self._resync_interval = resync_interval
        self._resolve_token = resolve_token
        self._recorder = recorder
        self._restored: set[str] = set()
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # PolicyHandler protocol
    # ------------------------------------------------------------------

    def known_keys(self) -> set[str]:
        return self._store.keys()

    async def apply(self, policy: RemediationPolicy) -> None:
        """Validate and store *policy*, then bring its status up to date.

        A policy whose bearer-token Secret cannot be read is kept out of
        the active set with ``Ready=False/CredentialUnavailable`` until a
        later pass finds the Secret.
        """
        previous = self._store.get(policy.key)
        problems = policy.validate()
        reason = REASON_INVALID_CONFIGURATION
        if not problems:
            credential_problem = await self._check_credentials(policy)
            if credential_problem:
                problems = [credential_problem]
                reason = REASON_CREDENTIAL_UNAVAILABLE
        self._store.put(policy, problems)

        if problems:
            message = "; ".join(problems)
            if previous is None or previous.problems != tuple(problems):
                _log.warning("policy_not_ready", policy=policy.key, reason=reason, problems=problems)
                await self._emit(policy, WARNING, reason, message)
            await self._write(self._aggregator.set_ready(policy, False, reason, message), policy)
            return

        if policy.key not in self._restored:
            self._restored.add(policy.key)
            _log.info("policy_added", policy=policy.key, selectors=len(policy.event_selectors), mode=policy.mode)
            if self._persistence is not None:
                await self._persistence.load_policy(policy)

        if not policy.has_status:
            try:
                await self._aggregator.initialize(policy)
            except StatusUpdateError as exc:
                _log.warning("policy_status_update_failed", policy=policy.key, error=str(exc))
                await self._emit(
                    policy, WARNING, REASON_STATUS_INITIALIZATION_FAILED, f"Failed to initialize status: {exc}"
                )
                return
            if previous is None:
                await self._emit(
                    policy,
                    NORMAL,
                    REASON_POLICY_CREATED,
                    f"RemediationPolicy '{policy.name}' created and ready to process events "
                    f"with {len(policy.event_selectors)} selectors",
                )
        else:
            await self._write(
                self._aggregator.set_ready(
                    policy,
                    True,
                    REASON_POLICY_VALID,
                    f"Policy ready to process events with {len(policy.event_selectors)} selectors",
                ),
                policy,
            )

    async def _check_credentials(self, policy: RemediationPolicy) -> str:
        """Problem text when ``mcpAuthSecretRef`` cannot be resolved, else ""."""
        if self._resolve_token is None or policy.mcp_auth_secret_ref is None:
            return ""
        try:
            await self._resolve_token(policy)
        except SecretResolutionError as exc:
            return f"spec.mcpAuthSecretRef: {exc}"
        return ""

    async def _emit(self, policy: RemediationPolicy, event_type: str, reason: str, message: str) -> None:
        if self._recorder is not None:
            await self._recorder.record(policy, event_type, reason, message)

    async def remove(self, namespace: str, name: str) -> None:
        key = f"{namespace}/{name}"
        self._restored.discard(key)
        if self._store.delete(key) is None:
            return
        dropped = self._cooldowns.remove_prefix(key + "/")
        if self._persistence is not None:
            self._persistence.forget_policy(key)
        _log.info("policy_removed", policy=key, cooldowns_dropped=dropped)

    @staticmethod
    async def _write(update: Any, policy: RemediationPolicy) -> None:
        try:
            await update
        except StatusUpdateError as exc:
            _log.warning("policy_status_update_failed", policy=policy.key, error=str(exc))

    # ------------------------------------------------------------------
    # Periodic maintenance
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="policy-maintenance")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._resync_interval)
            try:
                await self.maintenance()
            except Exception as exc:
                _log.error("policy_maintenance_error", error=str(exc), exc_info=True)

    async def maintenance(self) -> None:
        """Purge expired state and re-reconcile every known policy."""
        purged_tokens = self.pipeline.purge_expired() if self.pipeline is not None else 0
        purged_cooldowns = self._cooldowns.expire()
        for tracked in self._store.all_policies():
            await self.apply(tracked.policy)
        _log.debug(
            "policy_maintenance_complete",
            policies=len(self._store),
            dedup_purged=purged_tokens,
            cooldowns_purged=purged_cooldowns,
        )
