"""Resumable Kubernetes watch loop shared by the event and policy watchers.

A watcher keeps the last resourceVersion it saw (from objects or bookmarks)
and reopens the stream from there.  Transient failures sleep with a doubling
delay between 1 s and 60 s.  A stale version (410), three failures in a row
or more than one 429/5xx within a minute force a fresh list instead, which
is rate limited to one per 5 minutes and must finish within 10 s.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import (
    watcher_backoff_seconds,
    watcher_errors_total,
    watcher_events_total,
    watcher_reconnects_total,
    watcher_relist_timeout_total,
    watcher_relistings_total,
)

_BACKOFF_MIN_S = 1.0
_BACKOFF_MAX_S = 60.0

_FAILURE_LIMIT = 3
_RELIST_EVERY_S = 300.0
_RELIST_BUDGET_S = 10.0

_BURST_WINDOW_S = 60.0
_BURST_LIMIT = 1

_SERVER_ERRORS = frozenset({500, 502, 503, 504})


class WatcherError(Exception):
    """Raised when a watcher cannot recover from a terminal error."""


class BaseWatcher(ABC):
    """Watch one Kubernetes list endpoint until stopped.

    Subclasses choose the endpoint with :meth:`_list_func` and consume
    events in :meth:`_handle_event`.  :meth:`_list_kwargs` narrows the list
    (namespace, CRD group/version/plural) and :meth:`_on_relist` receives
    the full list whenever the watcher resynchronises.
    """

    def __init__(self, api: Any, cluster_id: str = "", name: str = "base") -> None:
        self._api = api
        self._cluster_id = cluster_id
        self._name = name
        self._log = get_logger(f"watcher.{name}")

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._resource_version = ""

        self._backoff_s = _BACKOFF_MIN_S
        self._consecutive_failures = 0
        self._burst_times: deque[float] = deque()
        self._last_relist_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._watch_loop(), name=f"watcher-{self._name}")
        self._log.info("watcher_started", watcher=self._name)

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._log.info("watcher_stopped", watcher=self._name)

    # -- hooks -----------------------------------------------------------

    @abstractmethod
    def _list_func(self) -> Callable[..., Coroutine[Any, Any, Any]]:
        """The bound API list method, e.g. ``api.list_event_for_all_namespaces``."""

    @abstractmethod
    async def _handle_event(self, event_type: str, obj: Any, raw: dict[str, Any]) -> None:
        """Consume one ADDED/MODIFIED/DELETED event.

        ``obj`` is the deserialized model (a plain dict for custom objects)
        and ``raw`` the untouched JSON body.
        """

    def _list_kwargs(self) -> dict[str, Any]:
        return {}

    async def _on_relist(self, result: Any) -> None:  # noqa: B027
        pass

    # -- stream ----------------------------------------------------------

    async def _watch_loop(self) -> None:
        while self._running:
            try:
                await self._run_watch()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                if not self._running:
                    return
                await self._handle_loop_exception(exc)

    async def _run_watch(self) -> None:
        kwargs = {**self._list_kwargs(), "allow_watch_bookmarks": True}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version

        stream = watch.Watch()
        try:
            async for event in stream.stream(self._list_func(), **kwargs):
                if not self._running:
                    return
                await self._consume(event)
            # The API server closes idle watches; count it so a flapping
            # endpoint still ends up relisting.
            self._consecutive_failures += 1
            self._log.debug(
                "watch_stream_ended",
                watcher=self._name,
                consecutive_failures=self._consecutive_failures,
            )
            await self._retry_or_relist("stream_end", "consecutive_failures")
        except ApiException as exc:
            await self._handle_api_exception(exc)
        finally:
            await stream.close()

    async def _consume(self, event: dict[str, Any]) -> None:
        event_type: str = event.get("type", "")
        if event_type == "BOOKMARK":
            self._resource_version = _extract_rv_from_bookmark(event) or self._resource_version
            return

        obj = event.get("object")
        raw = event.get("raw_object")
        if not isinstance(raw, dict):
            raw = obj if isinstance(obj, dict) else {}

        self._resource_version = _extract_rv(obj, raw) or self._resource_version
        self._consecutive_failures = 0
        watcher_events_total.labels(watcher=self._name, event_type=event_type).inc()
        await self._handle_event(event_type, obj, raw)

    # -- failures --------------------------------------------------------

    async def _handle_api_exception(self, exc: ApiException) -> None:
        status = exc.status
        watcher_errors_total.labels(watcher=self._name, status_code=str(status)).inc()

        if status == 410:
            self._log.warning("watch_expired", watcher=self._name)
            watcher_reconnects_total.labels(watcher=self._name, reason="410").inc()
            self._resource_version = ""
            await self._relist(reason="410")
            return

        if status == 429 or status in _SERVER_ERRORS:
            if status != 429:
                self._consecutive_failures += 1
            bursting = self._note_burst()
            self._log.warning(
                "watch_throttled" if status == 429 else "watch_server_error",
                watcher=self._name,
                status=status,
                consecutive_failures=self._consecutive_failures,
            )
            watcher_reconnects_total.labels(watcher=self._name, reason=str(status)).inc()
            if bursting or self._consecutive_failures >= _FAILURE_LIMIT:
                await self._relist(reason=f"{status}_burst")
            else:
                await self._backoff(str(status))
            return

        self._consecutive_failures += 1
        self._log.error(
            "watch_api_error",
            watcher=self._name,
            status=status,
            reason=exc.reason,
            consecutive_failures=self._consecutive_failures,
        )
        await self._retry_or_relist("api_error", "api_error_limit")

    async def _handle_loop_exception(self, exc: Exception) -> None:
        self._consecutive_failures += 1
        self._log.error(
            "watch_unexpected_error",
            watcher=self._name,
            error=str(exc),
            consecutive_failures=self._consecutive_failures,
            exc_info=True,
        )
        watcher_reconnects_total.labels(watcher=self._name, reason="unexpected").inc()
        await self._retry_or_relist("unexpected", "unexpected_limit")

    async def _retry_or_relist(self, backoff_reason: str, relist_reason: str) -> None:
        if self._consecutive_failures >= _FAILURE_LIMIT:
            await self._relist(reason=relist_reason)
        else:
            await self._backoff(backoff_reason)

    def _note_burst(self) -> bool:
        """Record a throttling/server error; True once the window holds too many."""
        now = time.monotonic()
        self._burst_times.append(now)
        while now - self._burst_times[0] > _BURST_WINDOW_S:
            self._burst_times.popleft()
        return len(self._burst_times) > _BURST_LIMIT

    async def _backoff(self, reason: str) -> None:
        delay = self._backoff_s
        self._log.debug("watcher_backoff", watcher=self._name, reason=reason, delay_s=delay)
        watcher_backoff_seconds.labels(watcher=self._name).observe(delay)
        await asyncio.sleep(delay)
        self._backoff_s = min(delay * 2, _BACKOFF_MAX_S)

    # -- relist ----------------------------------------------------------

    async def _relist(self, reason: str = "unknown") -> None:
        now = datetime.now(tz=UTC)
        if self._last_relist_at is not None:
            since = (now - self._last_relist_at).total_seconds()
            if since < _RELIST_EVERY_S:
                self._log.debug(
                    "relist_throttled",
                    watcher=self._name,
                    reason=reason,
                    next_allowed_in_s=_RELIST_EVERY_S - since,
                )
                await self._backoff("relist_throttled")
                return

        self._last_relist_at = now
        watcher_relistings_total.labels(watcher=self._name).inc()
        self._log.info("relist_start", watcher=self._name, reason=reason)
        try:
            async with asyncio.timeout(_RELIST_BUDGET_S):
                await self._do_relist()
        except TimeoutError:
            self._log.warning("relist_timeout", watcher=self._name, reason=reason)
            watcher_relist_timeout_total.labels(watcher=self._name).inc()
        except Exception as exc:
            self._log.error("relist_failed", watcher=self._name, reason=reason, error=str(exc), exc_info=True)

        self._backoff_s = _BACKOFF_MIN_S
        self._consecutive_failures = 0

    async def _do_relist(self) -> None:
        self._resource_version = ""
        result = await self._list_func()(**self._list_kwargs(), _preload_content=True, watch=False)
        self._resource_version = _extract_list_rv(result)
        if self._resource_version:
            self._log.info("relist_complete", watcher=self._name, resource_version=self._resource_version)
        else:
            self._log.warning("relist_no_rv", watcher=self._name)
        await self._on_relist(result)


def _metadata_rv(source: Any) -> str:
    """resourceVersion from a model's ``metadata`` or a JSON body's ``metadata``."""
    if isinstance(source, dict):
        meta = source.get("metadata")
        return str(meta.get("resourceVersion") or "") if isinstance(meta, dict) else ""
    meta = getattr(source, "metadata", None)
    if meta is None:
        return ""
    return str(getattr(meta, "resource_version", "") or "")


def _extract_rv(obj: Any, raw: dict[str, Any]) -> str:
    return _metadata_rv(obj) or _metadata_rv(raw)


def _extract_list_rv(result: Any) -> str:
    return _metadata_rv(result)


def _extract_rv_from_bookmark(event: dict[str, Any]) -> str:
    raw = event.get("raw_object")
    return _metadata_rv(raw) if isinstance(raw, dict) else ""
