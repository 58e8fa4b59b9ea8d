"""In-memory cooldown store.

Maps rate-limit keys to the time they last fired.  The only way in or
out is through :meth:`CooldownStore.try_fire` / :meth:`CooldownStore.evaluate`
(check-and-set) and :meth:`CooldownStore.snapshot` /
:meth:`CooldownStore.restore` (persistence).

Concurrency: each key has its own lock, so the decision for one key is
linearizable while unrelated keys never wait on each other.  The global
lock only guards creation and removal of per-key locks.  Decisions are
synchronous, so they are also atomic with respect to the event loop.

Besides the cooldown, a per-key sliding one-minute window enforces the
policy's ``eventsPerMinute`` ceiling inside the same critical section.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from kubemend.models.policy import RateLimiting
from kubemend.models.status import parse_time
from kubemend.observability.metrics import cooldown_entries

_WINDOW: timedelta = timedelta(minutes=1)
# Restored fires further in the future than this are treated as corrupt.
_MAX_CLOCK_SKEW: timedelta = timedelta(minutes=5)


@dataclass
class _Entry:
    last_fired_at: datetime
    cooldown: timedelta
    window: deque[datetime] = field(default_factory=deque)

    def cooldown_ends_at(self) -> datetime:
        return self.last_fired_at + self.cooldown

    def prune_window(self, now: datetime) -> None:
        cutoff = now - _WINDOW
        while self.window and self.window[0] <= cutoff:
            self.window.popleft()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: str = ""


_ALLOWED = RateLimitDecision(allowed=True)


def _seconds(value: timedelta | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class CooldownStore:
    """Thread-safe map of rate-limit key to last fire time."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def try_fire(self, key: str, cooldown: timedelta | float, *, now: datetime | None = None) -> bool:
        """Record a fire for *key* iff its cooldown has elapsed.

        Returns True (and records *now*) when there is no previous fire or
        ``now - last_fired >= cooldown``; False otherwise.
        """
        return self.evaluate(key, cooldown=cooldown, now=now).allowed

    def evaluate(
        self,
        key: str,
        *,
        cooldown: timedelta | float,
        events_per_minute: int = 0,
        now: datetime | None = None,
    ) -> RateLimitDecision:
        """Check cooldown and per-minute ceiling, recording the fire if allowed."""
        now = now or datetime.now(tz=UTC)
        cooldown_td = _seconds(cooldown)

        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is not None:
                # Measured against the caller's cooldown, not the one stored at the last fire.
                remaining = cooldown_td - (now - entry.last_fired_at)
                if remaining > timedelta(0):
                    return RateLimitDecision(
                        allowed=False,
                        reason=f"cooldown active for {int(remaining.total_seconds() + 0.5)}s more",
                    )
                entry.prune_window(now)
                if events_per_minute > 0 and len(entry.window) >= events_per_minute:
                    return RateLimitDecision(
                        allowed=False,
                        reason=(
                            f"rate limit exceeded: {len(entry.window)}/{events_per_minute} events in last minute"
                        ),
                    )
                entry.last_fired_at = now
                entry.cooldown = cooldown_td
                entry.window.append(now)
            else:
                self._entries[key] = _Entry(last_fired_at=now, cooldown=cooldown_td, window=deque([now]))
                cooldown_entries.set(len(self._entries))

        return _ALLOWED

    def check_policy(self, key: str, limits: RateLimiting, *, now: datetime | None = None) -> RateLimitDecision:
        """Apply a policy's ``rateLimiting`` block to *key*.

        Both limits at zero means rate limiting is off and nothing is recorded.
        """
        if limits.disabled:
            return _ALLOWED
        return self.evaluate(
            key,
            cooldown=limits.cooldown_seconds,
            events_per_minute=limits.events_per_minute,
            now=now,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def expire(self, *, now: datetime | None = None) -> int:
        """Drop entries whose cooldown and minute window have both elapsed."""
        now = now or datetime.now(tz=UTC)
        removed = 0
        for key in list(self._entries):
            lock = self._lock_for(key)
            if not lock.acquire(blocking=False):
                continue
            try:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                entry.prune_window(now)
                if entry.cooldown_ends_at() <= now and not entry.window:
                    del self._entries[key]
                    removed += 1
            finally:
                lock.release()
        with self._locks_guard:
            for key in [k for k in self._locks if k not in self._entries]:
                if not self._locks[key].locked():
                    del self._locks[key]
        cooldown_entries.set(len(self._entries))
        return removed

    def remove_prefix(self, prefix: str) -> int:
        """Forget every key starting with *prefix* (used when a policy is deleted)."""
        removed = 0
        for key in [k for k in self._entries if k.startswith(prefix)]:
            with self._lock_for(key):
                if self._entries.pop(key, None) is not None:
                    removed += 1
        cooldown_entries.set(len(self._entries))
        return removed

    # ------------------------------------------------------------------
    # Persistence support
    # ------------------------------------------------------------------

    def snapshot(self, prefix: str = "", *, now: datetime | None = None) -> dict[str, dict[str, Any]]:
        """Serialisable copy of the entries whose key starts with *prefix*.

        Each value is ``{"lastFiredAt": RFC3339, "cooldownSeconds": int,
        "windowFires": [RFC3339, ...]}``.  Entries already past both their
        cooldown and their minute window carry no information and are left
        out.
        """
        now = now or datetime.now(tz=UTC)
        out: dict[str, dict[str, Any]] = {}
        for key in [k for k in self._entries if k.startswith(prefix)]:
            with self._lock_for(key):
                entry = self._entries.get(key)
                if entry is None:
                    continue
                entry.prune_window(now)
                if entry.cooldown_ends_at() <= now and not entry.window:
                    continue
                out[key] = {
                    "lastFiredAt": format_time_precise(entry.last_fired_at),
                    "cooldownSeconds": int(entry.cooldown.total_seconds()),
                    "windowFires": [format_time_precise(t) for t in entry.window],
                }
        return out

    def restore(self, data: dict[str, Any], *, now: datetime | None = None) -> int:
        """Merge a snapshot into the store; returns the number of entries loaded.

        Malformed, future-dated or already-expired entries are skipped.  If
        a key is already present, the more recent fire wins.
        """
        now = now or datetime.now(tz=UTC)
        loaded = 0
        for key, raw in data.items():
            if not isinstance(key, str):
                continue
            try:
                entry = _entry_from_snapshot(raw, now)
            except (TypeError, ValueError, OverflowError):
                entry = None
            if entry is None:
                continue
            with self._lock_for(key):
                existing = self._entries.get(key)
                if existing is None or existing.last_fired_at < entry.last_fired_at:
                    self._entries[key] = entry
                    loaded += 1
        cooldown_entries.set(len(self._entries))
        return loaded


def _entry_from_snapshot(raw: Any, now: datetime) -> _Entry | None:
    """Build an entry from one snapshot value; None when it is unusable.

    Raises TypeError, ValueError or OverflowError on values that cannot be
    represented (infinite cooldowns, dates past ``datetime.max``).
    """
    if not isinstance(raw, dict):
        return None
    last = parse_time(raw.get("lastFiredAt"))
    if last is None or last - now > _MAX_CLOCK_SKEW:
        return None
    cooldown = timedelta(seconds=float(raw.get("cooldownSeconds", 0)))
    if cooldown < timedelta(0):
        return None
    fires = raw.get("windowFires") or []
    if not isinstance(fires, list):
        raise TypeError(f"windowFires must be a list, got {type(fires).__name__}")
    window = deque(sorted(t for t in (parse_time(v) for v in fires) if t is not None and t <= last))
    entry = _Entry(last_fired_at=last, cooldown=cooldown, window=window)
    entry.prune_window(now)
    if entry.cooldown_ends_at() <= now and not entry.window:
        return None
    return entry


def format_time_precise(value: datetime) -> str:
    """RFC 3339 with microseconds so restored decisions match exactly."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
