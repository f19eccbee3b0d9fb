"""Backoff utilities for peer reconnection policies."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field


@dataclass
class ExponentialBackoff:
    """Simple exponential backoff with optional jitter."""

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 120.0
    jitter: float = 0.1

    def next_delay(self, retries: int) -> float:
        """Calculate the next delay for given retry count (0-based)."""
        delay = self.base_delay * (self.multiplier ** max(0, retries))
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            jitter_amt = delay * self.jitter
            delay = max(0.0, delay - jitter_amt) + random.random() * (2 * jitter_amt)
        return delay


@dataclass
class _RetryState:
    failures: int = 0
    retry_at: float = 0.0


@dataclass
class RetryTracker:
    """Per-key failure counts with backoff-gated retry times.

    Keys are typically peer addresses. A key is given up after
    ``max_failures`` consecutive failures.
    """

    backoff: ExponentialBackoff = field(default_factory=ExponentialBackoff)
    max_failures: int = 5
    _states: dict[object, _RetryState] = field(default_factory=dict)

    def record_failure(self, key: object, now: float | None = None) -> float:
        """Count a failure and return the delay before the next attempt."""
        now = time.monotonic() if now is None else now
        state = self._states.setdefault(key, _RetryState())
        delay = self.backoff.next_delay(state.failures)
        state.failures += 1
        state.retry_at = now + delay
        return delay

    def record_success(self, key: object) -> None:
        """Forget a key's failure history."""
        self._states.pop(key, None)

    def failures(self, key: object) -> int:
        """Consecutive failures recorded for a key."""
        state = self._states.get(key)
        return state.failures if state else 0

    def exhausted(self, key: object) -> bool:
        """True once a key reached the failure limit."""
        return self.failures(key) >= self.max_failures

    def ready(self, key: object, now: float | None = None) -> bool:
        """True when a key may be attempted now."""
        state = self._states.get(key)
        if state is None:
            return True
        if state.failures >= self.max_failures:
            return False
        now = time.monotonic() if now is None else now
        return now >= state.retry_at
