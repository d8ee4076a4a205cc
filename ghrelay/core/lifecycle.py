"""Health and lifecycle manager.

States move one way: STARTING -> READY -> DRAINING -> STOPPED. An AuthError
puts READY into a degraded sub-state: cached reads still succeed, but new
remote calls fail fast until the daemon is restarted with a new credential.
"""

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ghrelay import __version__
from ghrelay.core.errors import AuthError, LifecycleError, ShuttingDown, TransientError

if TYPE_CHECKING:
    from ghrelay.core.coordinator import RequestCoordinator

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DRAINING = "draining"
    STOPPED = "stopped"


_TRANSITIONS = {
    LifecycleState.STARTING: {LifecycleState.READY, LifecycleState.DRAINING},
    LifecycleState.READY: {LifecycleState.DRAINING},
    LifecycleState.DRAINING: {LifecycleState.STOPPED},
    LifecycleState.STOPPED: set(),
}


class LifecycleManager:
    """Tracks daemon state, answers health probes and drives shutdown."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.state = LifecycleState.STARTING
        self.degraded = False
        self.degraded_reason: Optional[str] = None
        self.started_at = clock()
        self._coordinator: Optional["RequestCoordinator"] = None
        self._drain_callbacks: List[Callable[[], Any]] = []
        self._stopped = asyncio.Event()

    def bind(self, coordinator: "RequestCoordinator") -> None:
        self._coordinator = coordinator

    def add_drain_callback(self, callback: Callable[[], Any]) -> None:
        """Register a callable (sync or async) run when draining begins."""
        self._drain_callbacks.append(callback)

    def _transition(self, target: LifecycleState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise LifecycleError(f"Cannot move from {self.state.value} to {target.value}")
        logger.info(f"Lifecycle: {self.state.value} -> {target.value}")
        self.state = target

    def start(self) -> None:
        self._transition(LifecycleState.READY)

    def mark_degraded(self, reason: str) -> None:
        """Enter degraded mode after the credential was rejected."""
        if self.state is not LifecycleState.READY or self.degraded:
            return
        self.degraded = True
        self.degraded_reason = reason
        logger.error(f"Credential rejected, entering degraded mode: {reason}")

    @property
    def accepting(self) -> bool:
        return self.state in (LifecycleState.STARTING, LifecycleState.READY)

    def check_dispatch(self) -> None:
        """Raise if a new remote call may not be started right now."""
        if self.state in (LifecycleState.DRAINING, LifecycleState.STOPPED):
            raise ShuttingDown("Daemon is shutting down; reconnect to a new instance")
        if self.state is LifecycleState.STARTING:
            raise TransientError("Daemon is still starting", retry_after=1.0)
        if self.degraded:
            raise AuthError(self.degraded_reason or "GitHub credential rejected")

    async def shutdown(self, timeout: float = 30.0) -> bool:
        """
        Drain and stop.

        Moves to DRAINING, runs drain callbacks (the listener stops accepting
        connections), waits up to ``timeout`` for in-flight calls, then
        moves to STOPPED. Concurrent callers wait for the first one.

        Returns:
            True if every in-flight call finished before the timeout
        """
        if self.state in (LifecycleState.DRAINING, LifecycleState.STOPPED):
            await self._stopped.wait()
            return True

        self._transition(LifecycleState.DRAINING)
        for callback in self._drain_callbacks:
            result = callback()
            if inspect.isawaitable(result):
                await result

        drained = True
        if self._coordinator is not None:
            drained = await self._coordinator.wait_idle(timeout)
            if not drained:
                logger.warning(
                    f"Shutdown timeout ({timeout:.0f}s) elapsed with "
                    f"{self._coordinator.inflight_count()} calls in flight"
                )
                await self._coordinator.cancel_all()

        self._transition(LifecycleState.STOPPED)
        self._stopped.set()
        return drained

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def health(self) -> Dict[str, Any]:
        """Liveness/readiness report for probes."""
        report: Dict[str, Any] = {
            "state": self.state.value,
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
            "uptime_seconds": self.clock() - self.started_at,
            "version": __version__,
        }
        coordinator = self._coordinator
        if coordinator is not None:
            report["budgets"] = coordinator.budget.snapshot()
            report["inflight"] = coordinator.inflight_count()
            report["oldest_inflight_age"] = coordinator.oldest_inflight_age()
            report["cached_entries"] = len(coordinator.cache)
            report["cache"] = coordinator.cache.get_stats()
        return report
