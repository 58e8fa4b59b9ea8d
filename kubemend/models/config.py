"""Process configuration dataclasses.

Populated by :func:`kubemend.config.load_config` from ``KUBEMEND_*``
environment variables.  Durations are stored in seconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class LogConfig:
    level: str = "info"


@dataclass(frozen=True)
class APIConfig:
    port: int = 8080


@dataclass(frozen=True)
class PipelineConfig:
    """Event reaction settings."""

    max_concurrency: int = 10
    dedup_ttl: float = 600.0
    policy_resync: float = 300.0


@dataclass(frozen=True)
class RemediationConfig:
    """Backend call settings: attempt ceiling, backoff bounds, per-attempt timeout."""

    max_attempts: int = 4
    base_delay_ms: int = 500
    max_delay_ms: int = 30_000
    timeout_seconds: int = 120


@dataclass(frozen=True)
class NotificationsConfig:
    timeout_seconds: int = 10


@dataclass(frozen=True)
class PersistenceConfig:
    """Cooldown snapshot settings."""

    enabled: bool = True
    sync_interval: float = 60.0
    min_persist_interval: float = 30.0
    too_large_backoff: float = 300.0
    max_snapshot_bytes: int = 512 * 1024


@dataclass(frozen=True)
class KubeMendConfig:
    cluster_id: str = ""
    watch_namespace: str = ""
    log: LogConfig = field(default_factory=LogConfig)
    api: APIConfig = field(default_factory=APIConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    remediation: RemediationConfig = field(default_factory=RemediationConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
