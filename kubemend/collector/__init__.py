"""Watch loops feeding events and policies into the controller."""

from kubemend.collector.event_watcher import EventWatcher
from kubemend.collector.policy_watcher import PolicyHandler, PolicyWatcher
from kubemend.collector.watcher import BaseWatcher, WatcherError

__all__ = [
    "BaseWatcher",
    "EventWatcher",
    "PolicyHandler",
    "PolicyWatcher",
    "WatcherError",
]
