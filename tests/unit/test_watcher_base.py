"""Unit tests for kubemend.collector.watcher.BaseWatcher."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kubemend.collector.watcher import (
    BaseWatcher,
    _extract_list_rv,
    _extract_rv,
    _extract_rv_from_bookmark,
)

# ---------------------------------------------------------------------------
# Concrete subclass of BaseWatcher for testing
# ---------------------------------------------------------------------------


class _TestWatcher(BaseWatcher):
    """Minimal concrete subclass used to test BaseWatcher in isolation."""

    def __init__(self, api: object, **kwargs: object) -> None:
        super().__init__(api, name="test-watcher", **kwargs)  # type: ignore[arg-type]
        self.handled_events: list[tuple[str, object, dict]] = []
        self.relisted: list[Any] = []

    def _list_func(self):  # type: ignore[override]
        return self._api.list_namespaced_event

    def _list_kwargs(self) -> dict[str, Any]:
        return {"namespace": "prod"}

    async def _handle_event(self, event_type: str, obj: object, raw: dict) -> None:
        self.handled_events.append((event_type, obj, raw))

    async def _on_relist(self, result: Any) -> None:
        self.relisted.append(result)


def _make_watcher(cluster_id: str = "test") -> _TestWatcher:
    api = MagicMock()
    api.list_namespaced_event = AsyncMock()
    return _TestWatcher(api, cluster_id=cluster_id)


def _mock_watch(stream: Any) -> MagicMock:
    mock_watch = MagicMock()
    mock_watch.stream = stream
    mock_watch.close = AsyncMock()
    return mock_watch


# ---------------------------------------------------------------------------
# _watch_loop
# ---------------------------------------------------------------------------


class TestWatchLoop:
    async def test_runs_until_not_running(self) -> None:
        watcher = _make_watcher()
        call_count = 0

        async def fake_run_watch() -> None:
            nonlocal call_count
            call_count += 1
            watcher._running = False

        with patch.object(watcher, "_run_watch", side_effect=fake_run_watch):
            watcher._running = True
            await watcher._watch_loop()

        assert call_count == 1

    async def test_cancelled_error_returns_cleanly(self) -> None:
        watcher = _make_watcher()

        async def raise_cancelled() -> None:
            raise asyncio.CancelledError

        with patch.object(watcher, "_run_watch", side_effect=raise_cancelled):
            watcher._running = True
            await watcher._watch_loop()

    async def test_generic_exception_is_handled(self) -> None:
        watcher = _make_watcher()
        exc = RuntimeError("boom")
        call_count = 0

        async def raise_once() -> None:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise exc
            watcher._running = False

        with (
            patch.object(watcher, "_run_watch", side_effect=raise_once),
            patch.object(watcher, "_handle_loop_exception", new_callable=AsyncMock) as mock_handle,
        ):
            watcher._running = True
            await watcher._watch_loop()

        mock_handle.assert_called_once_with(exc)


# ---------------------------------------------------------------------------
# _run_watch
# ---------------------------------------------------------------------------


class TestRunWatch:
    async def test_bookmark_updates_resource_version(self) -> None:
        watcher = _make_watcher()

        async def stream(*args, **kwargs):
            yield {"type": "BOOKMARK", "object": None, "raw_object": {"metadata": {"resourceVersion": "42"}}}

        with (
            patch("kubemend.collector.watcher.watch.Watch", return_value=_mock_watch(stream)),
            patch.object(watcher, "_backoff", new_callable=AsyncMock),
        ):
            watcher._running = True
            await watcher._run_watch()

        assert watcher._resource_version == "42"
        assert watcher.handled_events == []

    async def test_added_event_is_handled_and_tracks_rv(self) -> None:
        watcher = _make_watcher()
        raw = {"metadata": {"resourceVersion": "10"}}

        async def stream(*args, **kwargs):
            yield {"type": "ADDED", "object": raw, "raw_object": raw}

        with (
            patch("kubemend.collector.watcher.watch.Watch", return_value=_mock_watch(stream)),
            patch.object(watcher, "_backoff", new_callable=AsyncMock),
        ):
            watcher._running = True
            await watcher._run_watch()

        assert watcher.handled_events == [("ADDED", raw, raw)]
        assert watcher._resource_version == "10"

    async def test_event_resets_consecutive_failures(self) -> None:
        watcher = _make_watcher()
        watcher._consecutive_failures = 2

        async def stream(*args, **kwargs):
            yield {"type": "MODIFIED", "object": {}, "raw_object": {}}

        with (
            patch("kubemend.collector.watcher.watch.Watch", return_value=_mock_watch(stream)),
            patch.object(watcher, "_backoff", new_callable=AsyncMock),
            patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist,
        ):
            watcher._running = True
            await watcher._run_watch()

        # One event reset the count, then the clean stream end added one
        assert watcher._consecutive_failures == 1
        mock_relist.assert_not_called()

    async def test_stream_end_at_max_failures_triggers_relist(self) -> None:
        watcher = _make_watcher()
        watcher._consecutive_failures = 2

        async def stream(*args, **kwargs):
            return
            yield

        with (
            patch("kubemend.collector.watcher.watch.Watch", return_value=_mock_watch(stream)),
            patch.object(watcher, "_backoff", new_callable=AsyncMock) as mock_backoff,
            patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist,
        ):
            watcher._running = True
            await watcher._run_watch()

        mock_relist.assert_called_once_with(reason="consecutive_failures")
        mock_backoff.assert_not_called()

    async def test_list_kwargs_and_bookmarks_passed_to_stream(self) -> None:
        watcher = _make_watcher()
        watcher._resource_version = "999"
        captured: dict = {}

        async def stream(*args, **kwargs):
            captured.update(kwargs)
            return
            yield

        with (
            patch("kubemend.collector.watcher.watch.Watch", return_value=_mock_watch(stream)),
            patch.object(watcher, "_backoff", new_callable=AsyncMock),
        ):
            watcher._running = True
            await watcher._run_watch()

        assert captured["namespace"] == "prod"
        assert captured["allow_watch_bookmarks"] is True
        assert captured["resource_version"] == "999"

    async def test_watch_closed_on_api_exception(self) -> None:
        from kubernetes_asyncio.client.exceptions import ApiException

        watcher = _make_watcher()

        async def stream(*args, **kwargs):
            raise ApiException(status=500, reason="Internal Server Error")
            yield

        mock_watch = _mock_watch(stream)
        with (
            patch("kubemend.collector.watcher.watch.Watch", return_value=mock_watch),
            patch.object(watcher, "_handle_api_exception", new_callable=AsyncMock) as mock_handle,
        ):
            watcher._running = True
            await watcher._run_watch()

        mock_watch.close.assert_called_once()
        mock_handle.assert_called_once()


# ---------------------------------------------------------------------------
# _handle_api_exception
# ---------------------------------------------------------------------------


class TestHandleApiException:
    def _make_exc(self, status: int, reason: str = "Unknown") -> MagicMock:
        exc = MagicMock()
        exc.status = status
        exc.reason = reason
        return exc

    async def test_410_clears_rv_and_relists(self) -> None:
        watcher = _make_watcher()
        watcher._resource_version = "5"
        with patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist:
            await watcher._handle_api_exception(self._make_exc(410, "Gone"))
        assert watcher._resource_version == ""
        mock_relist.assert_called_once_with(reason="410")

    async def test_first_429_backs_off(self) -> None:
        watcher = _make_watcher()
        with (
            patch.object(watcher, "_backoff", new_callable=AsyncMock) as mock_backoff,
            patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist,
        ):
            await watcher._handle_api_exception(self._make_exc(429))
        mock_backoff.assert_called_once_with("429")
        mock_relist.assert_not_called()

    async def test_repeated_429_relists(self) -> None:
        watcher = _make_watcher()
        with (
            patch.object(watcher, "_backoff", new_callable=AsyncMock),
            patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist,
        ):
            await watcher._handle_api_exception(self._make_exc(429))
            await watcher._handle_api_exception(self._make_exc(429))
        mock_relist.assert_called_once_with(reason="429_burst")

    async def test_server_errors_back_off_then_relist_on_burst(self) -> None:
        watcher = _make_watcher()
        with (
            patch.object(watcher, "_backoff", new_callable=AsyncMock) as mock_backoff,
            patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist,
        ):
            await watcher._handle_api_exception(self._make_exc(503))
            await watcher._handle_api_exception(self._make_exc(500))
        mock_backoff.assert_called_once_with("503")
        mock_relist.assert_called_once_with(reason="500_burst")
        assert watcher._consecutive_failures == 2

    async def test_unknown_status_below_threshold_backs_off(self) -> None:
        watcher = _make_watcher()
        with (
            patch.object(watcher, "_backoff", new_callable=AsyncMock) as mock_backoff,
            patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist,
        ):
            await watcher._handle_api_exception(self._make_exc(403, "Forbidden"))
        mock_backoff.assert_called_once_with("api_error")
        mock_relist.assert_not_called()
        assert watcher._consecutive_failures == 1

    async def test_unknown_status_at_threshold_relists(self) -> None:
        watcher = _make_watcher()
        watcher._consecutive_failures = 2
        with (
            patch.object(watcher, "_backoff", new_callable=AsyncMock) as mock_backoff,
            patch.object(watcher, "_relist", new_callable=AsyncMock) as mock_relist,
        ):
            await watcher._handle_api_exception(self._make_exc(403))
        mock_relist.assert_called_once_with(reason="api_error_limit")
        mock_backoff.assert_not_called()


# ---------------------------------------------------------------------------
# Relist
# ---------------------------------------------------------------------------


class TestRelist:
    async def test_do_relist_uses_list_kwargs_and_calls_hook(self) -> None:
        watcher = _make_watcher()
        result = {"metadata": {"resourceVersion": "300"}, "items": []}
        watcher._api.list_namespaced_event = AsyncMock(return_value=result)

        await watcher._do_relist()

        watcher._api.list_namespaced_event.assert_awaited_once_with(
            namespace="prod", _preload_content=True, watch=False
        )
        assert watcher._resource_version == "300"
        assert watcher.relisted == [result]

    async def test_relist_throttled_within_interval(self) -> None:
        watcher = _make_watcher()
        watcher._last_relist_at = datetime.now(tz=UTC) - timedelta(seconds=10)
        with (
            patch.object(watcher, "_backoff", new_callable=AsyncMock) as mock_backoff,
            patch.object(watcher, "_do_relist", new_callable=AsyncMock) as mock_do,
        ):
            await watcher._relist(reason="test")
        mock_backoff.assert_called_once_with("relist_throttled")
        mock_do.assert_not_called()

    async def test_relist_failure_is_swallowed_and_backoff_reset(self) -> None:
        watcher = _make_watcher()
        watcher._backoff_s = 32.0
        watcher._consecutive_failures = 3
        with patch.object(watcher, "_do_relist", new_callable=AsyncMock, side_effect=RuntimeError("nope")):
            await watcher._relist(reason="test")
        assert watcher._backoff_s == 1.0
        assert watcher._consecutive_failures == 0


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_and_stop(self) -> None:
        watcher = _make_watcher()

        async def forever() -> None:
            await asyncio.sleep(3600)

        with patch.object(watcher, "_watch_loop", side_effect=forever):
            await watcher.start()
            assert watcher.running is True
            await watcher.stop()
        assert watcher.running is False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestExtractHelpers:
    def test_extract_rv_prefers_typed_object(self) -> None:
        obj = MagicMock()
        obj.metadata.resource_version = "7"
        assert _extract_rv(obj, {"metadata": {"resourceVersion": "1"}}) == "7"

    def test_extract_rv_from_raw_dict(self) -> None:
        assert _extract_rv({}, {"metadata": {"resourceVersion": "8"}}) == "8"

    def test_extract_list_rv_dict_and_object(self) -> None:
        assert _extract_list_rv({"metadata": {"resourceVersion": "9"}}) == "9"
        typed = MagicMock()
        typed.metadata.resource_version = "10"
        assert _extract_list_rv(typed) == "10"
        assert _extract_list_rv({"items": []}) == ""

    @pytest.mark.parametrize(
        ("raw_event", "expected"),
        [
            ({"raw_object": {"metadata": {"resourceVersion": "11"}}}, "11"),
            ({"raw_object": "not-a-dict"}, ""),
            ({"raw_object": {"metadata": "bad"}}, ""),
        ],
    )
    def test_extract_rv_from_bookmark(self, raw_event: dict, expected: str) -> None:
        assert _extract_rv_from_bookmark(raw_event) == expected
