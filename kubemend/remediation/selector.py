"""Selector matching.

A policy's selectors are evaluated in declaration order and the first
selector whose non-empty fields all equal the event's fields wins.  An
empty selector field is a wildcard.  Order is the caller's contract:
no reordering or overlap detection happens here, so a catch-all
selector must come last.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from kubemend.models.events import EventRecord
from kubemend.models.policy import EventSelector, RemediationPolicy


@dataclass(frozen=True)
class EffectiveSettings:
    """Mode and safety thresholds after selector overrides are applied."""

    mode: str
    confidence_threshold: float
    max_risk_level: str


@dataclass(frozen=True)
class SelectorMatch:
    policy: RemediationPolicy
    selector: EventSelector
    index: int
    settings: EffectiveSettings


def selector_matches(selector: EventSelector, event: EventRecord) -> bool:
    """True when every non-empty selector field equals the event's field."""
    if selector.type and selector.type != event.type:
        return False
    if selector.reason and selector.reason != event.reason:
        return False
    if selector.involved_object_kind and selector.involved_object_kind != event.involved_object.kind:
        return False
    return not (selector.namespace and selector.namespace != event.namespace)


def find_matching_selector(selectors: Sequence[EventSelector], event: EventRecord) -> tuple[int, EventSelector] | None:
    """Return ``(index, selector)`` of the first match, or None."""
    for i, selector in enumerate(selectors):
        if selector_matches(selector, event):
            return i, selector
    return None


def effective_settings(selector: EventSelector, policy: RemediationPolicy) -> EffectiveSettings:
    """Selector-level overrides win; policy-level values are the fallback."""
    return EffectiveSettings(
        mode=selector.mode or policy.mode,
        confidence_threshold=(
            selector.confidence_threshold if selector.confidence_threshold is not None else policy.confidence_threshold
        ),
        max_risk_level=selector.max_risk_level or policy.max_risk_level,
    )


def match_policy(policy: RemediationPolicy, event: EventRecord) -> SelectorMatch | None:
    found = find_matching_selector(policy.event_selectors, event)
    if found is None:
        return None
    index, selector = found
    return SelectorMatch(policy=policy, selector=selector, index=index, settings=effective_settings(selector, policy))


def first_matching_policy(policies: Iterable[RemediationPolicy], event: EventRecord) -> SelectorMatch | None:
    """Evaluate *policies* in order and return the first policy match.

    An event is handled by at most one policy.
    """
    for policy in policies:
        match = match_policy(policy, event)
        if match is not None:
            return match
    return None
