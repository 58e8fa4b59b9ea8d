"""Owner resolution and rate-limit key derivation.

Short-lived Pods created by a CronJob each have a unique name, so keying
rate limits on the Pod name would never suppress anything.  The resolver
walks the controller-owner chain (Pod -> Job -> CronJob) so that every
Pod spawned by the same workload lands in the same cooldown bucket.

When the Pod is already gone (common for finished CronJob pods), the
CronJob name is recovered from the Pod name itself: CronJob pods are
named ``<cronjob>-<schedule timestamp>-<random suffix>``.  The heuristic
can misclassify an unrelated Pod whose name happens to match the same
shape; that risk is accepted and the heuristic is kept as is.

Resolution never raises: any failure degrades to the raw Pod name.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubemend.kube import is_not_found
from kubemend.models.events import EventRecord, ObjectReference
from kubemend.observability.logging import get_logger
from kubemend.observability.metrics import owner_resolutions_total

_log = get_logger("owner_resolver")

KIND_POD: str = "pod"
KIND_JOB: str = "job"
KIND_CRONJOB: str = "cronjob"


@dataclass(frozen=True)
class OwnerRef:
    """Normalised grouping identity: lowercase kind plus name."""

    kind: str
    name: str

    @property
    def identifier(self) -> str:
        return f"{self.kind}:{self.name}"


def parse_cronjob_name_from_pod_name(pod_name: str) -> str | None:
    """Recover the CronJob name from a ``<name>-<digits>-<suffix>`` Pod name.

    Returns None when the name does not have that shape.

    >>> parse_cronjob_name_from_pod_name("nightly-backup-29409620-abc12")
    'nightly-backup'
    >>> parse_cronjob_name_from_pod_name("short-xyz12") is None
    True
    """
    segments = pod_name.split("-")
    if len(segments) < 3:
        return None
    timestamp, suffix = segments[-2], segments[-1]
    if not timestamp or not timestamp.isascii() or not timestamp.isdigit():
        return None
    if not suffix or not suffix.isascii() or not suffix.isalnum():
        return None
    name = "-".join(segments[:-2])
    return name or None


def _job_owner_name(obj: Any) -> str:
    """Name of the first ``Job`` owner reference of a typed Pod, or ''."""
    metadata = getattr(obj, "metadata", None)
    for ref in getattr(metadata, "owner_references", None) or []:
        if getattr(ref, "kind", "") == "Job":
            return str(getattr(ref, "name", "") or "")
    return ""


def _cronjob_owner_name(obj: Any) -> str:
    metadata = getattr(obj, "metadata", None)
    for ref in getattr(metadata, "owner_references", None) or []:
        if getattr(ref, "kind", "") == "CronJob":
            return str(getattr(ref, "name", "") or "")
    return ""


class OwnerResolver:
    """Resolves the owning workload of an event's involved object.

    Args:
        core_api: ``CoreV1Api`` used to read Pods.
        batch_api: ``BatchV1Api`` used to read Jobs.
    """

    def __init__(self, core_api: Any, batch_api: Any) -> None:
        self._core = core_api
        self._batch = batch_api

    async def resolve(self, ref: ObjectReference) -> OwnerRef:
        if ref.kind != "Pod":
            owner_resolutions_total.labels(method="direct").inc()
            return OwnerRef(kind=ref.kind.lower() or KIND_POD, name=ref.name)
        return await self._resolve_pod(ref.namespace, ref.name)

    async def _resolve_pod(self, namespace: str, pod_name: str) -> OwnerRef:
        try:
            pod = await self._core.read_namespaced_pod(name=pod_name, namespace=namespace)
        except Exception as exc:
            if is_not_found(exc):
                parsed = parse_cronjob_name_from_pod_name(pod_name)
                if parsed is not None:
                    _log.debug("owner_parsed_from_pod_name", pod=pod_name, cronjob=parsed)
                    owner_resolutions_total.labels(method="parsed").inc()
                    return OwnerRef(kind=KIND_CRONJOB, name=parsed)
                _log.debug("owner_parse_failed", pod=pod_name)
            else:
                _log.warning("owner_pod_lookup_failed", pod=pod_name, namespace=namespace, error=str(exc))
            owner_resolutions_total.labels(method="fallback").inc()
            return OwnerRef(kind=KIND_POD, name=pod_name)

        job_name = _job_owner_name(pod)
        if not job_name:
            owner_resolutions_total.labels(method="live").inc()
            return OwnerRef(kind=KIND_POD, name=pod_name)

        try:
            job = await self._batch.read_namespaced_job(name=job_name, namespace=namespace)
        except Exception as exc:
            _log.debug("owner_job_lookup_failed", job=job_name, namespace=namespace, error=str(exc))
            owner_resolutions_total.labels(method="fallback").inc()
            return OwnerRef(kind=KIND_JOB, name=job_name)

        owner_resolutions_total.labels(method="live").inc()
        cronjob_name = _cronjob_owner_name(job)
        if cronjob_name:
            return OwnerRef(kind=KIND_CRONJOB, name=cronjob_name)
        return OwnerRef(kind=KIND_JOB, name=job_name)


def build_rate_limit_key(policy_namespace: str, policy_name: str, event: EventRecord, owner: OwnerRef) -> str:
    """``policyNamespace/policyName/objectNamespace/kind:name/reason``."""
    return "/".join(
        (
            policy_namespace,
            policy_name,
            event.involved_object.namespace,
            owner.identifier,
            event.reason,
        )
    )
