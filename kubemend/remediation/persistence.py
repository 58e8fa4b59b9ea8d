"""Durable cooldown snapshots.

Each policy's slice of the cooldown store is written to a ConfigMap named
``<policy>-cooldown-state`` in the policy's namespace, owned by the
policy so it is garbage-collected with it::

    data:
      cooldowns: '{"default/pod:web-0/BackOff": {"lastFiredAt": "...", "cooldownSeconds": 300}}'
      lastSync:  "2024-01-15T10:30:00Z"
      version:   "1"

Keys inside ``cooldowns`` are rate-limit keys with the leading
``policyNamespace/policyName/`` removed.

Write rules:
- a sync runs every ``sync_interval`` but only writes when at least
  ``min_persist_interval`` has passed since the last successful write;
- a policy's ConfigMap is rewritten only when its content changed;
- snapshots larger than ``max_snapshot_bytes`` are trimmed oldest-first;
- an "entity too large" rejection suspends all writes for
  ``too_large_backoff`` while in-memory rate limiting carries on;
- a conflict is logged and retried on the next sync.

Loading is best-effort: a missing, corrupt or wrong-version ConfigMap
leaves the policy with an empty cooldown history.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from kubemend.kube import (
    MANAGED_BY,
    POLICY_GROUP,
    POLICY_KIND,
    POLICY_VERSION,
    is_conflict,
    is_entity_too_large,
    is_not_found,
)
from kubemend.models.config import PersistenceConfig
from kubemend.models.policy import RemediationPolicy
from kubemend.models.status import format_time
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import cooldown_persist_backoff, cooldown_persist_total
from kubemend.remediation.cooldown import CooldownStore

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONFIGMAP_SUFFIX: str = "-cooldown-state"
DATA_KEY: str = "cooldowns"
LAST_SYNC_KEY: str = "lastSync"
VERSION_KEY: str = "version"
CURRENT_VERSION: str = "1"

_FINAL_SYNC_TIMEOUT_S: float = 30.0

PolicySource = Callable[[], Iterable[RemediationPolicy]]


def configmap_name(policy_name: str) -> str:
    return policy_name + CONFIGMAP_SUFFIX


def _policy_prefix(policy: RemediationPolicy) -> str:
    return f"{policy.namespace}/{policy.name}/"


def bound_snapshot(entries: dict[str, dict[str, Any]], max_bytes: int) -> tuple[str, int]:
    """Serialise *entries*, dropping the oldest fires until under *max_bytes*.

    Returns ``(json_text, dropped_count)``.
    """
    ordered = sorted(entries.items(), key=lambda kv: str(kv[1].get("lastFiredAt", "")))
    dropped = 0
    while True:
        text = json.dumps(dict(ordered), sort_keys=True, separators=(",", ":"))
        if len(text.encode("utf-8")) <= max_bytes or not ordered:
            return text, dropped
        # Drop roughly the oldest tenth at a time so huge maps converge quickly
        cut = max(1, len(ordered) // 10)
        ordered = ordered[cut:]
        dropped += cut


class CooldownPersistence:
    """Periodically persists and reloads :class:`CooldownStore` state.

    Args:
        core_api: ``CoreV1Api`` for ConfigMap reads and writes.
        store: The cooldown store to snapshot and restore.
        policies: Returns the policies currently known to the controller.
        config: Sync cadence and size limits.
        now_fn: Clock, injectable for tests.
    """

    def __init__(
        self,
        core_api: Any,
        store: CooldownStore,
        policies: PolicySource,
        config: PersistenceConfig | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._api = core_api
        self._store = store
        self._policies = policies
        self._config = config or PersistenceConfig()
        self._now = now_fn or (lambda: datetime.now(tz=UTC))
        self._log = get_logger("cooldown_persistence")

        self._last_success_at: datetime | None = None
        self._backoff_until: datetime | None = None
        self._written: dict[str, str] = {}
        self._task: asyncio.Task[None] | None = None
        self._sync_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def backoff_until(self) -> datetime | None:
        return self._backoff_until

    def in_backoff(self, now: datetime | None = None) -> bool:
        now = now or self._now()
        return self._backoff_until is not None and now < self._backoff_until

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None or not self._config.enabled:
            return
        self._task = asyncio.create_task(self._loop(), name="cooldown-persistence")
        self._log.info("cooldown_persistence_started", interval_s=self._config.sync_interval)

    async def stop(self) -> None:
        """Stop the periodic task and attempt one bounded final sync."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if not self._config.enabled:
            return
        try:
            async with asyncio.timeout(_FINAL_SYNC_TIMEOUT_S):
                await self.sync(force=True)
        except TimeoutError:
            self._log.warning("cooldown_final_sync_timeout", timeout_s=_FINAL_SYNC_TIMEOUT_S)
        self._log.info("cooldown_persistence_stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sync_interval)
            try:
                await self.sync()
            except Exception as exc:
                self._log.error("cooldown_sync_error", error=str(exc), exc_info=True)

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load_policy(self, policy: RemediationPolicy) -> int:
        """Restore one policy's persisted cooldowns into the store.

        Never raises; returns the number of entries loaded.
        """
        if not self._config.enabled or not policy.persistence_enabled:
            return 0

        name = configmap_name(policy.name)
        try:
            cm = await self._api.read_namespaced_config_map(name=name, namespace=policy.namespace)
        except Exception as exc:
            if not is_not_found(exc):
                self._log.warning("cooldown_load_failed", policy=policy.key, error=str(exc))
            return 0

        data: dict[str, str] = getattr(cm, "data", None) or {}
        version = data.get(VERSION_KEY)
        if version is not None and version != CURRENT_VERSION:
            self._log.info("cooldown_version_mismatch", policy=policy.key, found=version, expected=CURRENT_VERSION)
            return 0

        text = data.get(DATA_KEY, "")
        if not text:
            return 0
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            self._log.warning("cooldown_state_corrupt", policy=policy.key, error=str(exc))
            return 0
        if not isinstance(raw, dict):
            self._log.warning("cooldown_state_corrupt", policy=policy.key, error="not an object")
            return 0

        prefix = _policy_prefix(policy)
        try:
            loaded = self._store.restore({prefix + k: v for k, v in raw.items()}, now=self._now())
        except Exception as exc:
            self._log.warning("cooldown_state_corrupt", policy=policy.key, error=str(exc), exc_info=True)
            return 0
        self._written[policy.key] = text
        self._log.info("cooldown_state_loaded", policy=policy.key, loaded=loaded, stored=len(raw))
        return loaded

    def forget_policy(self, policy_key: str) -> None:
        self._written.pop(policy_key, None)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, *, force: bool = False) -> int:
        """Write every changed policy snapshot; returns ConfigMaps written.

        *force* skips the minimum-interval gate but not the size backoff.
        """
        async with self._sync_lock:
            return await self._sync(force)

    async def _sync(self, force: bool) -> int:
        now = self._now()
        if self.in_backoff(now):
            self._log.debug("cooldown_sync_backoff", until=format_time(self._backoff_until))
            cooldown_persist_total.labels(result="skipped_backoff").inc()
            return 0
        if self._backoff_until is not None:
            self._backoff_until = None
            cooldown_persist_backoff.set(0)

        if (
            not force
            and self._last_success_at is not None
            and now - self._last_success_at < timedelta(seconds=self._config.min_persist_interval)
        ):
            cooldown_persist_total.labels(result="skipped_interval").inc()
            return 0

        written = 0
        failed = False
        for policy in list(self._policies()):
            if not policy.persistence_enabled:
                continue
            prefix = _policy_prefix(policy)
            entries = {k[len(prefix) :]: v for k, v in self._store.snapshot(prefix, now=now).items()}
            text, dropped = bound_snapshot(entries, self._config.max_snapshot_bytes)
            if dropped:
                self._log.warning("cooldown_snapshot_trimmed", policy=policy.key, dropped=dropped)
            if self._written.get(policy.key, "{}" if not entries else None) == text:
                continue

            try:
                await self._write(policy, text, now)
            except Exception as exc:
                failed = True
                if is_entity_too_large(exc):
                    self._backoff_until = now + timedelta(seconds=self._config.too_large_backoff)
                    cooldown_persist_backoff.set(1)
                    cooldown_persist_total.labels(result="too_large").inc()
                    self._log.error(
                        "cooldown_persist_too_large",
                        policy=policy.key,
                        bytes=len(text.encode("utf-8")),
                        backoff_s=self._config.too_large_backoff,
                    )
                    break
                if is_conflict(exc):
                    cooldown_persist_total.labels(result="conflict").inc()
                    self._log.info("cooldown_persist_conflict", policy=policy.key)
                else:
                    cooldown_persist_total.labels(result="error").inc()
                    self._log.warning("cooldown_persist_failed", policy=policy.key, error=str(exc))
                continue

            self._written[policy.key] = text
            written += 1
            cooldown_persist_total.labels(result="written").inc()

        if not failed:
            self._last_success_at = now
        if written:
            self._log.debug("cooldown_sync_complete", written=written)
        return written

    async def _write(self, policy: RemediationPolicy, text: str, now: datetime) -> None:
        name = configmap_name(policy.name)
        data = {
            DATA_KEY: text,
            LAST_SYNC_KEY: format_time(now) or "",
            VERSION_KEY: CURRENT_VERSION,
        }
        try:
            existing = await self._api.read_namespaced_config_map(name=name, namespace=policy.namespace)
        except Exception as exc:
            if not is_not_found(exc):
                raise
            body = self._new_configmap(policy, name, data)
            await self._api.create_namespaced_config_map(namespace=policy.namespace, body=body)
            return

        body = self._new_configmap(policy, name, data)
        body["metadata"]["resourceVersion"] = getattr(existing.metadata, "resource_version", None)
        await self._api.replace_namespaced_config_map(name=name, namespace=policy.namespace, body=body)

    @staticmethod
    def _new_configmap(policy: RemediationPolicy, name: str, data: dict[str, str]) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "name": name,
            "namespace": policy.namespace,
            "labels": {
                "app.kubernetes.io/component": "cooldown-state",
                "app.kubernetes.io/managed-by": MANAGED_BY,
            },
        }
        if policy.uid:
            metadata["ownerReferences"] = [
                {
                    "apiVersion": f"{POLICY_GROUP}/{POLICY_VERSION}",
                    "kind": POLICY_KIND,
                    "name": policy.name,
                    "uid": policy.uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ]
        return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}
