"""Watcher for RemediationPolicy custom resources.

Policies arrive as plain dicts from ``CustomObjectsApi``.  Each add or
modify is parsed and handed to a :class:`PolicyHandler` (the policy
reconciler in production); deletes remove the policy.  After a relist,
policies that vanished while the watch was down are removed as well.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any, Protocol, runtime_checkable

from kubemend.collector.watcher import BaseWatcher
from kubemend.kube import POLICY_GROUP, POLICY_PLURAL, POLICY_VERSION
from kubemend.models.policy import RemediationPolicy
from kubemend.observability.logging import get_logger


@runtime_checkable
class PolicyHandler(Protocol):
    """What the policy watcher drives."""

    async def apply(self, policy: RemediationPolicy) -> None: ...

    async def remove(self, namespace: str, name: str) -> None: ...

    def known_keys(self) -> set[str]: ...


class PolicyWatcher(BaseWatcher):
    """Watches RemediationPolicy objects and keeps the handler in sync."""

    def __init__(self, api: Any, handler: PolicyHandler, cluster_id: str = "", namespace: str = "") -> None:
        """Initialise the policy watcher.

        Args:
            api: A ``CustomObjectsApi`` instance.
            handler: Receives parsed policies and deletions.
            cluster_id: Cluster identifier used in logs.
            namespace: Restrict the watch to one namespace; empty watches all.
        """
        super().__init__(api, cluster_id=cluster_id, name="policy")
        self._log = get_logger("watcher.policy")
        self._handler = handler
        self._namespace = namespace

    async def prime(self) -> None:
        """Load every existing policy before the watch (and event processing) starts.

        The watch then resumes from the list's resourceVersion.
        """
        await self._do_relist()
        self._log.info("policies_primed", count=len(self._handler.known_keys()))

    def _list_func(self) -> Callable[..., Coroutine[Any, Any, Any]]:
        if self._namespace:
            return self._api.list_namespaced_custom_object  # type: ignore[no-any-return]
        return self._api.list_cluster_custom_object  # type: ignore[no-any-return]

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "group": POLICY_GROUP,
            "version": POLICY_VERSION,
            "plural": POLICY_PLURAL,
        }
        if self._namespace:
            kwargs["namespace"] = self._namespace
        return kwargs

    async def _handle_event(self, event_type: str, obj: Any, raw: dict[str, Any]) -> None:
        body = obj if isinstance(obj, dict) else raw
        if not body:
            return
        policy = RemediationPolicy.from_dict(body)
        if not policy.name:
            return

        if event_type == "DELETED":
            self._log.info("policy_deleted", policy=policy.key)
            await self._handler.remove(policy.namespace, policy.name)
            return

        await self._handler.apply(policy)

    async def _on_relist(self, result: Any) -> None:
        items = result.get("items", []) if isinstance(result, dict) else []
        seen: set[str] = set()
        for item in items:
            if not isinstance(item, dict):
                continue
            policy = RemediationPolicy.from_dict(item)
            if not policy.name:
                continue
            seen.add(policy.key)
            await self._handler.apply(policy)

        for key in self._handler.known_keys() - seen:
            namespace, _, name = key.partition("/")
            self._log.info("policy_gone_after_relist", policy=key)
            await self._handler.remove(namespace, name)
