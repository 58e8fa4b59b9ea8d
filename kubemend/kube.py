"""Kubernetes API coordinates, ``ApiException`` classification and Secret reads."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException

POLICY_GROUP: str = "dot-ai.devopstoolkit.live"
POLICY_VERSION: str = "v1alpha1"
POLICY_PLURAL: str = "remediationpolicies"
POLICY_KIND: str = "RemediationPolicy"

MANAGED_BY: str = "kubemend"

_TOO_LARGE_MARKERS: tuple[str, ...] = (
    "too large",
    "request is too large",
    "entity too large",
)


def _text(exc: ApiException) -> str:
    return f"{exc.reason or ''} {exc.body or ''}".lower()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_entity_too_large(exc: BaseException) -> bool:
    """True for errors caused by an object exceeding the storage size ceiling.

    The API server reports these as 413, or as 422/500 whose message says
    the object or request exceeds a size limit.
    """
    if not isinstance(exc, ApiException):
        return False
    if exc.status == 413:
        return True
    text = _text(exc)
    if any(marker in text for marker in _TOO_LARGE_MARKERS):
        return True
    return "exceeds" in text and ("size" in text or "limit" in text)


# ---------------------------------------------------------------------------
# Secret references
# ---------------------------------------------------------------------------


class SecretResolutionError(Exception):
    """A referenced Secret, or the key inside it, could not be read."""


async def read_secret_value(core_api: Any, namespace: str, name: str, key: str) -> str:
    """Return the decoded value of ``key`` in Secret ``namespace/name``.

    Raises SecretResolutionError when the Secret is missing, lacks the key,
    or the value is empty.  Other API errors propagate wrapped in the same
    exception type.
    """
    try:
        secret = await core_api.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            raise SecretResolutionError(f"Secret '{name}' not found in namespace '{namespace}'") from exc
        raise SecretResolutionError(f"failed to read Secret '{name}': {exc.reason}") from exc

    data: dict[str, str] = getattr(secret, "data", None) or {}
    if key not in data:
        raise SecretResolutionError(f"Secret '{name}' does not contain key '{key}'")
    try:
        value = base64.b64decode(data[key] or "").decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise SecretResolutionError(f"Secret '{name}' key '{key}' is not valid base64 UTF-8") from exc
    if not value:
        raise SecretResolutionError(f"Secret '{name}' key '{key}' is empty")
    return value
