"""Core event data structures."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ObjectReference:
    """Reference to the Kubernetes object an event is about."""

    kind: str
    name: str
    namespace: str = ""
    api_version: str = ""
    uid: str = ""


@dataclass(frozen=True)
class EventRecord:
    """Canonical representation of a ``v1.Event``.

    Produced by the event watcher, consumed by the remediation pipeline.
    Immutable: no component may mutate an EventRecord after creation.
    """

    type: str
    reason: str
    message: str
    namespace: str
    name: str
    involved_object: ObjectReference
    first_seen: datetime
    last_seen: datetime
    resource_version: str = ""
    count: int = 1
    cluster_id: str = ""

    @property
    def dedup_key(self) -> str:
        """Uniqueness token: event identity plus its resourceVersion.

        A new resourceVersion is written every time the API server bumps
        ``lastTimestamp``/``count``, so a re-observed event gets a new token.
        """
        return f"{self.namespace}/{self.name}/{self.resource_version}"
