"""Rate budget controller.

Tracks GitHub's remaining allowance per category (GraphQL points, REST
calls) and decides whether an outbound call may proceed now, must wait for
the reset, or must be refused.

Budgets are refreshed from every response's rate-limit headers. The most
recent observation wins: GitHub returns the authoritative budget each time.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ghrelay.core.models import Category, RateLimitInfo

logger = logging.getLogger(__name__)

# GitHub restores primary rate limits hourly.
RATE_WINDOW = 3600.0


class AdmissionAction(str, Enum):
    PROCEED = "proceed"
    PROCEED_AFTER = "proceed_after"
    REFUSE = "refuse"


@dataclass(frozen=True)
class AdmissionDecision:
    action: AdmissionAction
    delay: float = 0.0


@dataclass
class RateBudget:
    category: Category
    ceiling: int
    remaining: int
    reset_at: Optional[float] = None
    limit: Optional[int] = None


class RateBudgetController:
    """
    Per-category admission control.

    Admission is serialized per category by a lock: each admitted call
    reserves its estimated cost before the lock is released, so a burst of
    local requests cannot overdraw the shared budget.
    """

    def __init__(
        self,
        graphql_ceiling: int = 5000,
        rest_ceiling: int = 5000,
        reserve: int = 1,
        window: float = RATE_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            graphql_ceiling: Points restored to the GraphQL budget on reset
            rest_ceiling: Calls restored to the REST budget on reset
            reserve: Safety margin; calls wait once remaining <= reserve
            window: Assumed length of a rate window when GitHub has not
                reported a reset time yet
            clock: Epoch-seconds clock (GitHub reports resets as epochs)
        """
        self.reserve = reserve
        self.window = window
        self.clock = clock
        self._budgets: Dict[Category, RateBudget] = {
            Category.GRAPHQL: RateBudget(Category.GRAPHQL, graphql_ceiling, graphql_ceiling),
            Category.REST: RateBudget(Category.REST, rest_ceiling, rest_ceiling),
        }
        self._locks: Dict[Category, threading.Lock] = {
            category: threading.Lock() for category in Category
        }

    def _maybe_reset(self, budget: RateBudget, now: float) -> None:
        if budget.reset_at is not None and now >= budget.reset_at:
            logger.info(f"{budget.category.value} budget reset to {budget.ceiling}")
            budget.remaining = budget.ceiling
            budget.reset_at = None

    def admit(self, category: Category, cost: int = 1) -> AdmissionDecision:
        """Decide whether a call of ``cost`` may be dispatched now."""
        with self._locks[category]:
            budget = self._budgets[category]
            now = self.clock()
            self._maybe_reset(budget, now)

            if budget.remaining > self.reserve:
                budget.remaining = max(0, budget.remaining - cost)
                if budget.reset_at is None:
                    # Provisional; the next response headers replace it
                    budget.reset_at = now + self.window
                return AdmissionDecision(AdmissionAction.PROCEED)

            if budget.reset_at is not None:
                return AdmissionDecision(
                    AdmissionAction.PROCEED_AFTER,
                    delay=max(0.0, budget.reset_at - now),
                )

            return AdmissionDecision(AdmissionAction.REFUSE)

    def observe(self, info: Optional[RateLimitInfo]) -> None:
        """Apply rate-limit headers from the most recent response."""
        if info is None:
            return
        with self._locks[info.category]:
            budget = self._budgets[info.category]
            if info.remaining is not None:
                budget.remaining = max(0, int(info.remaining))
            if info.reset_at is not None:
                budget.reset_at = float(info.reset_at)
            if info.limit is not None:
                budget.limit = int(info.limit)

    def exhaust(self, category: Category, reset_at: Optional[float]) -> None:
        """Record that GitHub reported the budget as spent."""
        with self._locks[category]:
            budget = self._budgets[category]
            budget.remaining = 0
            if reset_at is not None:
                budget.reset_at = float(reset_at)
        logger.warning(f"{category.value} budget exhausted (reset at {reset_at})")

    def remaining(self, category: Category) -> int:
        with self._locks[category]:
            return self._budgets[category].remaining

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Budgets for health reporting."""
        result = {}
        for category in Category:
            with self._locks[category]:
                budget = self._budgets[category]
                result[category.value] = {
                    "remaining": budget.remaining,
                    "reset_at": budget.reset_at,
                    "ceiling": budget.ceiling,
                    "limit": budget.limit,
                }
        return result
