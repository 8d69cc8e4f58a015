"""Bounded polling shared by every wait in the workflows.

Cloud resources settle asynchronously, so most steps end with "ask again
until it is ready". :func:`poll_until` is the single implementation of that
loop. It never waits forever: once the attempts are exhausted it reports
:attr:`PollOutcome.TIMED_OUT` and the caller decides whether that is a warning.
A check may raise to abort the wait (for example on an ``error`` lifecycle
state).
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .config import WaitBudget


class PollOutcome(str, Enum):
    """Terminal state of a poll."""

    READY = "ready"
    TIMED_OUT = "timed-out"


@dataclass(slots=True, frozen=True)
class PollResult:
    """Outcome of :func:`poll_until` with the number of checks performed."""

    outcome: PollOutcome
    attempts: int
    waited_seconds: float

    @property
    def ready(self) -> bool:
        """Return ``True`` when the condition was met."""
        return self.outcome is PollOutcome.READY


def poll_until(
    check: Callable[[], bool],
    budget: WaitBudget,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, int], None] | None = None,
) -> PollResult:
    """Call *check* until it returns ``True`` or *budget* is exhausted.

    *on_retry* receives ``(attempt, attempts)`` before each sleep so callers
    can print progress.
    """
    interval = budget.interval
    waited = 0.0
    for attempt in range(1, budget.attempts + 1):
        if check():
            return PollResult(PollOutcome.READY, attempt, waited)
        if attempt == budget.attempts:
            break
        if on_retry is not None:
            on_retry(attempt, budget.attempts)
        sleep(interval)
        waited += interval
        interval *= budget.backoff
    return PollResult(PollOutcome.TIMED_OUT, budget.attempts, waited)


__all__ = ["PollOutcome", "PollResult", "poll_until"]
