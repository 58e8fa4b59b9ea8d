"""Event watcher for Kubernetes v1.Event resources.

Extends BaseWatcher to watch Events cluster-wide (or in a single
namespace), convert them to :class:`EventRecord` and fan them out to the
registered callbacks.  ``DELETED`` notifications are ignored: an Event
being garbage-collected is not a new occurrence.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

from kubemend.collector.watcher import BaseWatcher
from kubemend.models.events import EventRecord, ObjectReference
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import events_total

EventCallback = Callable[[EventRecord], Coroutine[Any, Any, None]]


class EventWatcher(BaseWatcher):
    """Watches Kubernetes v1.Events and forwards them as EventRecords.

    Usage::

        v1 = kubernetes_asyncio.client.CoreV1Api()
        watcher = EventWatcher(v1, cluster_id="prod")
        watcher.add_callback(pipeline.handle_event)
        await watcher.start()
    """

    def __init__(self, api: Any, cluster_id: str = "", namespace: str = "") -> None:
        """Initialise the event watcher.

        Args:
            api: A ``CoreV1Api`` instance.
            cluster_id: Cluster identifier forwarded to ``EventRecord.cluster_id``.
            namespace: Restrict the watch to one namespace; empty watches all.
        """
        super().__init__(api, cluster_id=cluster_id, name="event")
        self._log = get_logger("watcher.event")
        self._namespace = namespace
        self._callbacks: list[EventCallback] = []

    def add_callback(self, cb: EventCallback) -> None:
        """Register an async callback invoked for every new EventRecord.

        Args:
            cb: ``async def cb(record: EventRecord) -> None``
        """
        self._callbacks.append(cb)

    # ------------------------------------------------------------------
    # BaseWatcher implementation
    # ------------------------------------------------------------------

    def _list_func(self) -> Callable[..., Coroutine[Any, Any, Any]]:
        if self._namespace:
            return self._api.list_namespaced_event  # type: ignore[no-any-return]
        return self._api.list_event_for_all_namespaces  # type: ignore[no-any-return]

    def _list_kwargs(self) -> dict[str, Any]:
        return {"namespace": self._namespace} if self._namespace else {}

    async def _handle_event(self, event_type: str, obj: Any, raw: dict[str, Any]) -> None:
        if event_type == "DELETED":
            return

        record = convert_event(obj, raw, self._cluster_id)
        if record is None:
            return

        events_total.labels(type=record.type or "Unknown").inc()

        if self._callbacks:
            results = await asyncio.gather(*(cb(record) for cb in self._callbacks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self._log.error(
                        "event_callback_error",
                        event_key=record.dedup_key,
                        error=str(result),
                        exc_info=result,
                    )


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


def convert_event(obj: Any, raw: dict[str, Any], cluster_id: str = "") -> EventRecord | None:
    """Convert a V1Event (or its raw dict) to an EventRecord.

    Returns None if the event lacks metadata.
    """
    if obj is not None and hasattr(obj, "metadata") and not isinstance(obj, dict):
        return _from_v1_event(obj, cluster_id)
    return _from_raw_dict(raw, cluster_id)


def _from_v1_event(obj: Any, cluster_id: str) -> EventRecord | None:
    metadata = obj.metadata
    if metadata is None:
        return None

    involved = obj.involved_object
    ref = ObjectReference(
        kind=getattr(involved, "kind", "") or "",
        name=getattr(involved, "name", "") or "",
        namespace=getattr(involved, "namespace", "") or "",
        api_version=getattr(involved, "api_version", "") or "",
        uid=getattr(involved, "uid", "") or "",
    )

    first_seen = _coerce_dt(getattr(obj, "first_timestamp", None))
    last_seen = _coerce_dt(getattr(obj, "last_timestamp", None))
    if last_seen is None:
        last_seen = _coerce_dt(getattr(obj, "event_time", None)) or first_seen or datetime.now(tz=UTC)
    if first_seen is None:
        first_seen = last_seen

    return EventRecord(
        type=getattr(obj, "type", "") or "",
        reason=getattr(obj, "reason", "") or "",
        message=getattr(obj, "message", "") or "",
        namespace=getattr(metadata, "namespace", "") or "",
        name=getattr(metadata, "name", "") or "",
        involved_object=ref,
        first_seen=first_seen,
        last_seen=last_seen,
        resource_version=getattr(metadata, "resource_version", "") or "",
        count=getattr(obj, "count", 1) or 1,
        cluster_id=cluster_id,
    )


def _from_raw_dict(raw: dict[str, Any], cluster_id: str) -> EventRecord | None:
    metadata = raw.get("metadata")
    if not isinstance(metadata, dict):
        return None

    involved = raw.get("involvedObject")
    if not isinstance(involved, dict):
        involved = {}

    ref = ObjectReference(
        kind=str(involved.get("kind") or ""),
        name=str(involved.get("name") or ""),
        namespace=str(involved.get("namespace") or ""),
        api_version=str(involved.get("apiVersion") or ""),
        uid=str(involved.get("uid") or ""),
    )

    count_raw = raw.get("count", 1)
    try:
        count = int(count_raw) if count_raw is not None else 1
    except (TypeError, ValueError):
        count = 1

    first_seen = _parse_dt_str(raw.get("firstTimestamp"))
    last_seen = _parse_dt_str(raw.get("lastTimestamp"))
    if last_seen is None:
        last_seen = _parse_dt_str(raw.get("eventTime")) or first_seen or datetime.now(tz=UTC)
    if first_seen is None:
        first_seen = last_seen

    return EventRecord(
        type=str(raw.get("type") or ""),
        reason=str(raw.get("reason") or ""),
        message=str(raw.get("message") or ""),
        namespace=str(metadata.get("namespace") or ""),
        name=str(metadata.get("name") or ""),
        involved_object=ref,
        first_seen=first_seen,
        last_seen=last_seen,
        resource_version=str(metadata.get("resourceVersion") or ""),
        count=count,
        cluster_id=cluster_id,
    )


def _coerce_dt(value: Any) -> datetime | None:
    """Coerce a kubernetes_asyncio datetime field (already a datetime) or None."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return None


def _parse_dt_str(value: Any) -> datetime | None:
    """Parse an ISO-8601 UTC datetime string from a raw dict field."""
    if isinstance(value, datetime):
        return _coerce_dt(value)
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
    return None
