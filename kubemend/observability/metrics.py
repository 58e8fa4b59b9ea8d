"""Prometheus metrics for KubeMend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Event metrics
events_total = Counter(
    "kubemend_events_total",
    "Total Kubernetes events received",
    ["type"],
)

events_matched_total = Counter(
    "kubemend_events_matched_total",
    "Events that matched a policy selector",
    ["policy"],
)

events_deduplicated_total = Counter(
    "kubemend_events_deduplicated_total",
    "Events dropped because they were already processed",
)

events_rate_limited_total = Counter(
    "kubemend_events_rate_limited_total",
    "Events suppressed by cooldown or per-minute limit",
    ["policy"],
)

event_handler_errors_total = Counter(
    "kubemend_event_handler_errors_total",
    "Unexpected exceptions raised while handling an event",
)

# Remediation backend metrics
remediation_requests_total = Counter(
    "kubemend_remediation_requests_total",
    "Remediation requests by terminal outcome",
    ["outcome"],
)

remediation_attempts_total = Counter(
    "kubemend_remediation_attempts_total",
    "Individual HTTP attempts against the remediation backend",
    ["result"],
)

remediation_duration_seconds = Histogram(
    "kubemend_remediation_duration_seconds",
    "Wall time from first attempt to terminal outcome",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

remediations_in_flight = Gauge(
    "kubemend_remediations_in_flight",
    "Remediation dispatches currently running",
)

# Owner resolution
owner_resolutions_total = Counter(
    "kubemend_owner_resolutions_total",
    "Owner resolutions by method",
    ["method"],
)

# Notifications
notifications_total = Counter(
    "kubemend_notifications_total",
    "Chat webhook notifications sent",
    ["channel", "success"],
)

# Cooldown store and persistence
cooldown_entries = Gauge(
    "kubemend_cooldown_entries",
    "Rate-limit keys tracked in memory",
)

cooldown_persist_total = Counter(
    "kubemend_cooldown_persist_total",
    "Cooldown snapshot writes by result",
    ["result"],
)

cooldown_persist_backoff = Gauge(
    "kubemend_cooldown_persist_backoff",
    "1 while snapshot persistence is backing off after a size-ceiling error",
)

# Status aggregator
status_updates_total = Counter(
    "kubemend_status_updates_total",
    "Policy status writes by result",
    ["result"],
)

status_update_conflicts_total = Counter(
    "kubemend_status_update_conflicts_total",
    "Optimistic-concurrency conflicts on policy status writes",
)

# Audit events
policy_events_total = Counter(
    "kubemend_policy_events_total",
    "Kubernetes Events emitted on RemediationPolicies by reason and result",
    ["reason", "result"],
)

# Policies
policies_tracked = Gauge(
    "kubemend_policies_tracked",
    "RemediationPolicies known to the controller",
    ["valid"],
)

# Watcher metrics
watcher_events_total = Counter(
    "kubemend_watcher_events_total",
    "Watch events received per watcher",
    ["watcher", "event_type"],
)

watcher_errors_total = Counter(
    "kubemend_watcher_errors_total",
    "Watch API errors per watcher",
    ["watcher", "status_code"],
)

watcher_reconnects_total = Counter(
    "kubemend_watcher_reconnects_total",
    "Watch reconnects per watcher",
    ["watcher", "reason"],
)

watcher_relistings_total = Counter(
    "kubemend_watcher_relistings_total",
    "Recovery relists per watcher",
    ["watcher"],
)

watcher_backoff_seconds = Histogram(
    "kubemend_watcher_backoff_seconds",
    "Back-off delays applied by watchers",
    ["watcher"],
    buckets=(1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0),
)

watcher_relist_timeout_total = Counter(
    "kubemend_watcher_relist_timeout_total",
    "Relists that exceeded their time budget",
    ["watcher"],
)
