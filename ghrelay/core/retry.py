"""Retry policy with jittered exponential backoff.

Retrying is modelled as explicit state transitions so the coordinator's
loop stays flat and tests can drive it with a fixed random source.
"""

import random
from dataclasses import dataclass
from typing import Callable, Optional

from ghrelay.core.errors import RateLimitedError, RelayError


@dataclass(frozen=True)
class RetryState:
    attempt: int = 1  # 1-based number of the attempt that just ran
    delay: float = 0.0  # seconds to sleep before the next attempt


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 4  # total attempts, including the first
    base: float = 0.5  # backoff before the second attempt
    cap: float = 8.0
    jitter: bool = True

    def backoff(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay after ``attempt`` failed: equal jitter over base * 2**(attempt-1)."""
        delay = min(self.cap, self.base * (2 ** (attempt - 1)))
        if self.jitter:
            delay = delay / 2 + rng() * delay / 2
        return delay

    def next(
        self,
        state: RetryState,
        error: RelayError,
        rng: Callable[[], float] = random.random,
    ) -> Optional[RetryState]:
        """
        Transition after a failed attempt.

        Returns:
            The state for the next attempt, or None when the error is not
            retryable or the attempt budget is spent
        """
        if not error.retryable or state.attempt >= self.attempts:
            return None
        if isinstance(error, RateLimitedError):
            # Waiting for the reset is the budget controller's job.
            return RetryState(attempt=state.attempt + 1, delay=0.0)
        delay = self.backoff(state.attempt, rng)
        if error.retry_after is not None:
            delay = max(delay, float(error.retry_after))
        return RetryState(attempt=state.attempt + 1, delay=delay)
