"""Tests for kubemend.config: environment variable loading and validation.

Covers:
  - Default values when no KUBEMEND_* env vars are set
  - Numeric clamping (min/max bounds for int fields)
  - Duration parsing and rejection of malformed values
  - Boolean parsing for the persistence toggle
"""

from __future__ import annotations

import pytest

from kubemend.config import load_config, parse_duration
from kubemend.models.config import KubeMendConfig

_ALL_VARS = (
    "KUBEMEND_CLUSTER_ID",
    "KUBEMEND_WATCH_NAMESPACE",
    "KUBEMEND_LOG_LEVEL",
    "KUBEMEND_API_PORT",
    "KUBEMEND_MAX_CONCURRENT_REMEDIATIONS",
    "KUBEMEND_DEDUP_TTL",
    "KUBEMEND_POLICY_RESYNC",
    "KUBEMEND_REMEDIATION_MAX_ATTEMPTS",
    "KUBEMEND_REMEDIATION_BASE_DELAY_MS",
    "KUBEMEND_REMEDIATION_MAX_DELAY_MS",
    "KUBEMEND_REMEDIATION_TIMEOUT",
    "KUBEMEND_NOTIFICATION_TIMEOUT",
    "KUBEMEND_COOLDOWN_PERSISTENCE_ENABLED",
    "KUBEMEND_COOLDOWN_SYNC_INTERVAL",
    "KUBEMEND_COOLDOWN_MIN_PERSIST_INTERVAL",
    "KUBEMEND_COOLDOWN_TOO_LARGE_BACKOFF",
    "KUBEMEND_COOLDOWN_MAX_SNAPSHOT_BYTES",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ALL_VARS:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class TestConfigDefaults:
    def test_returns_kubemend_config_type(self) -> None:
        assert isinstance(load_config(), KubeMendConfig)

    def test_watches_all_namespaces_by_default(self) -> None:
        assert load_config().watch_namespace == ""

    def test_default_log_level(self) -> None:
        assert load_config().log.level == "info"

    def test_default_api_port(self) -> None:
        assert load_config().api.port == 8080

    def test_default_pipeline(self) -> None:
        config = load_config()
        assert config.pipeline.max_concurrency == 10
        assert config.pipeline.dedup_ttl == 600.0
        assert config.pipeline.policy_resync == 300.0

    def test_default_remediation_retry(self) -> None:
        config = load_config()
        assert config.remediation.max_attempts == 4
        assert config.remediation.base_delay_ms == 500
        assert config.remediation.max_delay_ms == 30_000
        assert config.remediation.timeout_seconds == 120

    def test_default_persistence(self) -> None:
        config = load_config()
        assert config.persistence.enabled is True
        assert config.persistence.sync_interval == 60.0
        assert config.persistence.min_persist_interval == 30.0
        assert config.persistence.too_large_backoff == 300.0


# ---------------------------------------------------------------------------
# Overrides and clamping
# ---------------------------------------------------------------------------


class TestConfigOverrides:
    def test_cluster_id_and_namespace(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_CLUSTER_ID", "prod-eu")
        monkeypatch.setenv("KUBEMEND_WATCH_NAMESPACE", "payments")
        config = load_config()
        assert config.cluster_id == "prod-eu"
        assert config.watch_namespace == "payments"

    def test_log_level_is_case_insensitive(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_LOG_LEVEL", "DEBUG")
        assert load_config().log.level == "debug"

    def test_invalid_log_level_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_LOG_LEVEL", "verbose")
        with pytest.raises(ValueError, match="log level"):
            load_config()

    def test_max_attempts_clamped_high(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_REMEDIATION_MAX_ATTEMPTS", "50")
        assert load_config().remediation.max_attempts == 10

    def test_max_attempts_clamped_low(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_REMEDIATION_MAX_ATTEMPTS", "0")
        assert load_config().remediation.max_attempts == 1

    def test_api_port_clamped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_API_PORT", "80")
        assert load_config().api.port == 1024

    def test_non_integer_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_MAX_CONCURRENT_REMEDIATIONS", "lots")
        with pytest.raises(ValueError, match="KUBEMEND_MAX_CONCURRENT_REMEDIATIONS"):
            load_config()

    def test_max_delay_never_below_base_delay(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_REMEDIATION_BASE_DELAY_MS", "5000")
        monkeypatch.setenv("KUBEMEND_REMEDIATION_MAX_DELAY_MS", "1000")
        config = load_config()
        assert config.remediation.max_delay_ms == 5000

    def test_duration_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_COOLDOWN_TOO_LARGE_BACKOFF", "10m")
        assert load_config().persistence.too_large_backoff == 600.0

    def test_malformed_duration_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEMEND_DEDUP_TTL", "ten minutes")
        with pytest.raises(ValueError, match="Invalid duration"):
            load_config()

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("true", True), ("1", True), ("YES", True), ("on", True), ("false", False), ("0", False), ("no", False)],
    )
    def test_persistence_toggle(self, monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool) -> None:
        monkeypatch.setenv("KUBEMEND_COOLDOWN_PERSISTENCE_ENABLED", raw)
        assert load_config().persistence.enabled is expected


class TestParseDuration:
    @pytest.mark.parametrize(
        ("raw", "seconds"),
        [("30s", 30.0), ("5m", 300.0), ("1h", 3600.0), ("2d", 172800.0), (" 15m ", 900.0)],
    )
    def test_valid(self, raw: str, seconds: float) -> None:
        assert parse_duration(raw) == seconds

    @pytest.mark.parametrize("raw", ["", "5", "m5", "1.5h", "-1m", "10w"])
    def test_invalid(self, raw: str) -> None:
        with pytest.raises(ValueError):
            parse_duration(raw)
