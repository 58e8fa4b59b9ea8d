"""Bounded retry state machine.

Retry is modelled as data rather than as nested ``try``/``except``::

    state = RetryState(RetryPolicy(max_attempts=4))
    while True:
        state.begin_attempt()
        outcome = classify(...)
        step = state.record(outcome)
        if step.done:
            break
        await sleep(step.delay)

The loop is bounded by the attempt ceiling, never by wall-clock time, so
a slow but responsive peer eventually exhausts its attempts.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum


class Outcome(StrEnum):
    """Classification of a single attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class Terminal(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling and exponential backoff bounds (seconds).

    ``jitter`` is the fractional spread applied to each delay: 0.25 means
    the delay is drawn from ``[0.75 * d, 1.25 * d]`` before capping.
    """

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.25

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay to wait after failed attempt number *attempt* (1-based)."""
        raw = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        spread = raw * self.jitter * (2 * rng() - 1)
        return max(0.0, min(self.max_delay, raw + spread))


@dataclass(frozen=True)
class Step:
    """What to do after recording an attempt's outcome."""

    done: bool
    delay: float = 0.0
    terminal: Terminal | None = None


class RetryState:
    """Tracks attempts against a :class:`RetryPolicy`."""

    def __init__(self, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> None:
        if policy.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.policy = policy
        self._rng = rng
        self.attempts = 0
        self.terminal: Terminal | None = None

    @property
    def done(self) -> bool:
        return self.terminal is not None

    def begin_attempt(self) -> int:
        if self.done:
            raise RuntimeError(f"retry already finished: {self.terminal}")
        self.attempts += 1
        return self.attempts

    def record(self, outcome: Outcome) -> Step:
        if outcome is Outcome.SUCCESS:
            self.terminal = Terminal.SUCCEEDED
        elif outcome is Outcome.FATAL:
            self.terminal = Terminal.FAILED
        elif self.attempts >= self.policy.max_attempts:
            self.terminal = Terminal.EXHAUSTED
        else:
            return Step(done=False, delay=self.policy.delay_for(self.attempts, self._rng))
        return Step(done=True, terminal=self.terminal)
