"""Unit tests for kubemend.remediation.cooldown.CooldownStore."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

from kubemend.models.policy import RateLimiting
from kubemend.remediation.cooldown import CooldownStore

_T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)
_KEY = "ops/crashes/batch/cronjob:nightly-backup/BackOff"


def _at(minutes: float = 0, seconds: float = 0) -> datetime:
    return _T0 + timedelta(minutes=minutes, seconds=seconds)


class TestTryFire:
    def test_first_fire_allowed(self) -> None:
        store = CooldownStore()
        assert store.try_fire(_KEY, timedelta(minutes=15), now=_T0) is True
        assert len(store) == 1

    def test_within_cooldown_denied(self) -> None:
        store = CooldownStore()
        store.try_fire(_KEY, 900, now=_T0)
        assert store.try_fire(_KEY, 900, now=_at(minutes=14, seconds=59)) is False

    def test_exactly_at_cooldown_allowed(self) -> None:
        store = CooldownStore()
        store.try_fire(_KEY, 900, now=_T0)
        assert store.try_fire(_KEY, 900, now=_at(minutes=15)) is True

    def test_denied_fire_does_not_extend_cooldown(self) -> None:
        store = CooldownStore()
        store.try_fire(_KEY, 900, now=_T0)
        store.try_fire(_KEY, 900, now=_at(minutes=10))
        assert store.try_fire(_KEY, 900, now=_at(minutes=15)) is True

    def test_cronjob_events_two_minutes_apart(self) -> None:
        # A CronJob failing every 2 minutes fires once per 15 minute cooldown
        store = CooldownStore()
        fired = [store.try_fire(_KEY, timedelta(minutes=15), now=_at(minutes=m)) for m in range(0, 30, 2)]
        assert fired.count(True) == 2
        assert fired[0] is True
        assert fired.index(True, 1) == 8  # minute 16

    def test_shortened_cooldown_applies_to_previous_fire(self) -> None:
        store = CooldownStore()
        assert store.try_fire(_KEY, timedelta(minutes=15), now=_T0) is True
        assert store.try_fire(_KEY, timedelta(minutes=1), now=_at(minutes=2)) is True

    def test_lengthened_cooldown_applies_to_previous_fire(self) -> None:
        store = CooldownStore()
        store.try_fire(_KEY, timedelta(minutes=1), now=_T0)
        assert store.try_fire(_KEY, timedelta(minutes=15), now=_at(minutes=2)) is False

    def test_keys_are_independent(self) -> None:
        store = CooldownStore()
        store.try_fire("a", 900, now=_T0)
        assert store.try_fire("b", 900, now=_T0) is True

    def test_concurrent_fires_allow_exactly_one(self) -> None:
        store = CooldownStore()
        results: list[bool] = []
        lock = threading.Lock()
        barrier = threading.Barrier(16)

        def worker() -> None:
            barrier.wait()
            allowed = store.try_fire(_KEY, 900, now=_T0)
            with lock:
                results.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1


class TestEvaluate:
    def test_per_minute_ceiling(self) -> None:
        store = CooldownStore()
        decisions = [
            store.evaluate(_KEY, cooldown=0, events_per_minute=3, now=_at(seconds=s)) for s in (0, 10, 20, 30)
        ]
        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert "3/3 events in last minute" in decisions[-1].reason

    def test_window_slides(self) -> None:
        store = CooldownStore()
        for s in (0, 10):
            store.evaluate(_KEY, cooldown=0, events_per_minute=2, now=_at(seconds=s))
        assert store.evaluate(_KEY, cooldown=0, events_per_minute=2, now=_at(seconds=61)).allowed is True

    def test_cooldown_reason_reports_remaining(self) -> None:
        store = CooldownStore()
        store.evaluate(_KEY, cooldown=300, now=_T0)
        decision = store.evaluate(_KEY, cooldown=300, now=_at(minutes=1))
        assert decision.allowed is False
        assert decision.reason == "cooldown active for 240s more"

    def test_check_policy_disabled_records_nothing(self) -> None:
        store = CooldownStore()
        limits = RateLimiting(events_per_minute=0, cooldown_minutes=0)
        assert store.check_policy(_KEY, limits, now=_T0).allowed is True
        assert store.check_policy(_KEY, limits, now=_T0).allowed is True
        assert len(store) == 0

    def test_check_policy_zero_rate_still_applies_cooldown(self) -> None:
        store = CooldownStore()
        limits = RateLimiting(events_per_minute=0, cooldown_minutes=5)
        assert store.check_policy(_KEY, limits, now=_T0).allowed is True
        assert store.check_policy(_KEY, limits, now=_at(minutes=4)).allowed is False


class TestMaintenance:
    def test_expire_drops_elapsed_entries(self) -> None:
        store = CooldownStore()
        store.try_fire("old", 60, now=_T0)
        store.try_fire("fresh", 3600, now=_T0)
        removed = store.expire(now=_at(minutes=5))
        assert removed == 1
        assert len(store) == 1

    def test_remove_prefix(self) -> None:
        store = CooldownStore()
        store.try_fire("ops/a/x", 60, now=_T0)
        store.try_fire("ops/a/y", 60, now=_T0)
        store.try_fire("ops/ab/z", 60, now=_T0)
        assert store.remove_prefix("ops/a/") == 2
        assert len(store) == 1


class TestSnapshotRestore:
    def test_restored_store_makes_same_decision(self) -> None:
        store = CooldownStore()
        store.evaluate(_KEY, cooldown=900, events_per_minute=5, now=_T0)
        snap = store.snapshot(now=_at(minutes=1))
        assert snap[_KEY]["cooldownSeconds"] == 900

        restored = CooldownStore()
        assert restored.restore(snap, now=_at(minutes=1)) == 1
        assert restored.try_fire(_KEY, 900, now=_at(minutes=10)) is False
        assert restored.try_fire(_KEY, 900, now=_at(minutes=15)) is True

    def test_snapshot_filters_prefix_and_expired(self) -> None:
        store = CooldownStore()
        store.try_fire("ops/a/k1", 60, now=_T0)
        store.try_fire("ops/a/k2", 3600, now=_T0)
        store.try_fire("ops/b/k3", 3600, now=_T0)
        snap = store.snapshot("ops/a/", now=_at(minutes=5))
        assert list(snap) == ["ops/a/k2"]

    def test_restore_skips_malformed_and_expired(self) -> None:
        store = CooldownStore()
        loaded = store.restore(
            {
                "bad-time": {"lastFiredAt": "yesterday", "cooldownSeconds": 60},
                "bad-cooldown": {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": "soon"},
                "expired": {"lastFiredAt": "2024-01-15T09:00:00Z", "cooldownSeconds": 60},
                "live": {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": 600},
                "not-a-dict": 5,
            },
            now=_at(minutes=1),
        )
        assert loaded == 1
        assert len(store) == 1

    def test_restore_keeps_newer_in_memory_fire(self) -> None:
        store = CooldownStore()
        store.try_fire(_KEY, 600, now=_at(minutes=5))
        older = {_KEY: {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": 600}}
        loaded = store.restore(older, now=_at(minutes=6))
        assert loaded == 0
        assert store.try_fire(_KEY, 600, now=_at(minutes=12)) is False

    def test_restore_skips_unrepresentable_entries(self) -> None:
        store = CooldownStore()
        loaded = store.restore(
            {
                "window-not-list": {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": 600, "windowFires": 5},
                "far-future": {"lastFiredAt": "9999-12-31T23:59:59Z", "cooldownSeconds": 600},
                "infinite": {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": "inf"},
                "nan": {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": "nan"},
                "negative": {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": -60},
                "live": {"lastFiredAt": "2024-01-15T10:00:00Z", "cooldownSeconds": 600},
            },
            now=_at(minutes=1),
        )
        assert loaded == 1
        assert store.try_fire("live", 600, now=_at(minutes=2)) is False
        assert store.try_fire("far-future", 600, now=_at(minutes=2)) is True
