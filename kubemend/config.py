"""Environment-based configuration loader.

Every setting is read from a ``KUBEMEND_*`` environment variable.  Numeric
values outside their documented range are clamped, not rejected; values
that cannot be interpreted at all (bad log level, malformed duration)
raise ``ValueError`` so the process fails fast at startup.
"""

from __future__ import annotations

import os
import re

from kubemend.models.config import (
    APIConfig,
    KubeMendConfig,
    LogConfig,
    NotificationsConfig,
    PersistenceConfig,
    PipelineConfig,
    RemediationConfig,
)

_PREFIX = "KUBEMEND_"
_VALID_LOG_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error"})
_TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_DURATION_RE = re.compile(r"^([0-9]+)(s|m|h|d)$")
_UNIT_SECONDS: dict[str, int] = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> float:
    """Parse ``30s``, ``5m``, ``1h``, ``2d`` into seconds.

    Raises ValueError on anything else.
    """
    m = _DURATION_RE.match(value.strip())
    if not m:
        raise ValueError(f"Invalid duration format: {value!r}. Expected [0-9]+(s|m|h|d).")
    return float(int(m.group(1)) * _UNIT_SECONDS[m.group(2)])


def _env(name: str, default: str) -> str:
    return os.environ.get(_PREFIX + name, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    raw = os.environ.get(_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {_PREFIX}{name}: {raw!r}") from exc
    return max(lo, min(hi, value))


def _env_duration(name: str, default: str) -> float:
    return parse_duration(_env(name, default))


def load_config() -> KubeMendConfig:
    """Build a :class:`KubeMendConfig` from the current environment."""
    level = _env("LOG_LEVEL", "info").strip().lower()
    if level not in _VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level!r}. Expected one of {sorted(_VALID_LOG_LEVELS)}.")

    base_delay = _env_int("REMEDIATION_BASE_DELAY_MS", 500, 10, 60_000)
    max_delay = _env_int("REMEDIATION_MAX_DELAY_MS", 30_000, 100, 300_000)

    return KubeMendConfig(
        cluster_id=_env("CLUSTER_ID", ""),
        watch_namespace=_env("WATCH_NAMESPACE", ""),
        log=LogConfig(level=level),
        api=APIConfig(port=_env_int("API_PORT", 8080, 1024, 65535)),
        pipeline=PipelineConfig(
            max_concurrency=_env_int("MAX_CONCURRENT_REMEDIATIONS", 10, 1, 100),
            dedup_ttl=_env_duration("DEDUP_TTL", "10m"),
            policy_resync=_env_duration("POLICY_RESYNC", "5m"),
        ),
        remediation=RemediationConfig(
            max_attempts=_env_int("REMEDIATION_MAX_ATTEMPTS", 4, 1, 10),
            base_delay_ms=base_delay,
            max_delay_ms=max(max_delay, base_delay),
            timeout_seconds=_env_int("REMEDIATION_TIMEOUT", 120, 5, 600),
        ),
        notifications=NotificationsConfig(
            timeout_seconds=_env_int("NOTIFICATION_TIMEOUT", 10, 1, 60),
        ),
        persistence=PersistenceConfig(
            enabled=_env_bool("COOLDOWN_PERSISTENCE_ENABLED", True),
            sync_interval=_env_duration("COOLDOWN_SYNC_INTERVAL", "60s"),
            min_persist_interval=_env_duration("COOLDOWN_MIN_PERSIST_INTERVAL", "30s"),
            too_large_backoff=_env_duration("COOLDOWN_TOO_LARGE_BACKOFF", "5m"),
            max_snapshot_bytes=_env_int("COOLDOWN_MAX_SNAPSHOT_BYTES", 512 * 1024, 1024, 900 * 1024),
        ),
    )
