"""Request coordinator - the mediation core of the relay.

For every decoded client request the coordinator:
1. Serves fresh cached reads without touching GitHub
2. Joins an identical in-flight call instead of dispatching a second one
3. Otherwise dispatches once: budget admission, remote call, retry with
   backoff on transient failure
4. Stores idempotent results, invalidates overlapping entries on mutation
   and resolves every waiter with the same result

Each dispatch runs in its own task and waiters await a shielded future, so
a client that disconnects never cancels a call other clients depend on.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from ghrelay.core.budget import AdmissionAction, RateBudgetController
from ghrelay.core.cache import ResponseCache
from ghrelay.core.errors import (
    AuthError,
    RateLimitedError,
    RelayError,
    RequestTimeout,
    ShuttingDown,
)
from ghrelay.core.fingerprint import fingerprint, resource_key
from ghrelay.core.lifecycle import LifecycleManager
from ghrelay.core.models import (
    CacheEntry,
    Category,
    ClientRequest,
    OperationKind,
    RemoteResponse,
)
from ghrelay.core.retry import RetryPolicy, RetryState

logger = logging.getLogger(__name__)


class Remote(Protocol):
    async def execute(
        self, request: ClientRequest, etag: Optional[str] = None
    ) -> RemoteResponse: ...

    async def ping(self) -> bool: ...


class CallState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class CoordinatorResult:
    body: Any
    source: str  # cache | stale | remote | revalidated | coalesced
    fingerprint: str


@dataclass
class InFlightCall:
    """One outstanding remote call and the clients waiting on it."""

    key: str
    future: "asyncio.Future[CoordinatorResult]"
    started_at: float
    waiters: int = 0
    state: CallState = CallState.PENDING
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)


def _consume_exception(future: "asyncio.Future[Any]") -> None:
    # Waiters may all be gone; don't let asyncio log an unretrieved error.
    if not future.cancelled():
        future.exception()


class RequestCoordinator:
    """Owns the in-flight table and ties cache, budget and remote together."""

    def __init__(
        self,
        remote: Remote,
        budget: RateBudgetController,
        cache: ResponseCache,
        lifecycle: LifecycleManager,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        """
        Args:
            remote: Anything with GitHubClient's execute() and ping()
            budget: Shared rate budget controller
            cache: Shared response cache
            lifecycle: Lifecycle manager consulted before each dispatch
            retry_policy: Backoff policy for transient failures
            request_timeout: Overall deadline per request, across retries
            sleep: Awaitable sleep (tests inject a fake)
            clock: Monotonic clock for deadlines and in-flight ages
            rng: Random source for backoff jitter
        """
        self.remote = remote
        self.budget = budget
        self.cache = cache
        self.lifecycle = lifecycle
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.sleep = sleep
        self.clock = clock
        self.rng = rng
        self._inflight: Dict[str, InFlightCall] = {}
        self.remote_calls = 0
        lifecycle.bind(self)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle(self, request: ClientRequest) -> CoordinatorResult:
        """
        Resolve one client request.

        Raises:
            RelayError subclasses; nothing else crosses this boundary
        """
        fp = fingerprint(request)

        stale: Optional[CacheEntry] = None
        if request.idempotent:
            entry = self.cache.lookup(fp)
            if entry is not None:
                if entry.is_fresh(self.cache.clock()):
                    return CoordinatorResult(entry.body, "cache", fp)
                if self.lifecycle.degraded:
                    return CoordinatorResult(entry.body, "stale", fp)
                stale = entry

        # Writes coalesce only when the caller marks them as the same write.
        key = fp
        if not request.idempotent and not request.idempotency_key:
            key = f"{fp}:{uuid.uuid4().hex}"

        call = self._inflight.get(key)
        joined = call is not None
        if call is None:
            self.lifecycle.check_dispatch()
            loop = asyncio.get_running_loop()
            call = InFlightCall(key=key, future=loop.create_future(), started_at=self.clock())
            call.future.add_done_callback(_consume_exception)
            self._inflight[key] = call
            call.task = asyncio.create_task(self._dispatch(call, request, fp, stale))

        call.waiters += 1
        try:
            result = await asyncio.wait_for(
                asyncio.shield(call.future), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            raise RequestTimeout(
                f"Request did not complete within {self.request_timeout:.0f}s"
            )
        finally:
            call.waiters -= 1

        if joined:
            return replace(result, source="coalesced")
        return result

    def inflight_count(self) -> int:
        return len(self._inflight)

    def oldest_inflight_age(self) -> Optional[float]:
        if not self._inflight:
            return None
        now = self.clock()
        return max(now - call.started_at for call in self._inflight.values())

    async def wait_idle(self, timeout: float) -> bool:
        """Wait for every in-flight call to resolve. False on timeout."""
        tasks = [c.task for c in self._inflight.values() if c.task is not None]
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def cancel_all(self) -> None:
        tasks = [c.task for c in self._inflight.values() if c.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        call: InFlightCall,
        request: ClientRequest,
        fp: str,
        stale: Optional[CacheEntry],
    ) -> None:
        try:
            result = await self._run(request, fp, stale)
        except RelayError as e:
            call.state = CallState.FAILED
            call.future.set_exception(e)
        except asyncio.CancelledError:
            call.state = CallState.FAILED
            call.future.set_exception(ShuttingDown("Call cancelled during shutdown"))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error dispatching {fp[:12]}: {e}")
            call.state = CallState.FAILED
            call.future.set_exception(RelayError(f"Internal error: {e}"))
        else:
            call.state = CallState.SUCCEEDED
            call.future.set_result(result)
        finally:
            self._inflight.pop(call.key, None)

    def _invalidate_for(self, request: ClientRequest, key: str) -> None:
        if key:
            self.cache.invalidate_related(key)
        elif request.kind is OperationKind.GRAPHQL_MUTATION:
            self.cache.invalidate_category(Category.GRAPHQL)

    async def _run(
        self,
        request: ClientRequest,
        fp: str,
        stale: Optional[CacheEntry],
    ) -> CoordinatorResult:
        deadline = self.clock() + self.request_timeout
        key = resource_key(request)

        if not request.idempotent:
            self._invalidate_for(request, key)
            try:
                response = await self._call_with_retry(request, None, deadline)
            finally:
                # The write may have landed even if we saw an error.
                self._invalidate_for(request, key)
            return CoordinatorResult(response.body, "remote", fp)

        since = self.cache.begin()
        etag = stale.etag if stale is not None and request.kind is OperationKind.REST else None
        response = await self._call_with_retry(request, etag, deadline)

        if response.not_modified and stale is not None:
            if self.cache.refresh(fp) is None:
                self.cache.store(
                    fp,
                    self.cache.make_entry(fp, stale.body, key, stale.etag, request.category),
                    since=since,
                )
            return CoordinatorResult(stale.body, "revalidated", fp)

        entry = self.cache.make_entry(fp, response.body, key, response.etag, request.category)
        self.cache.store(fp, entry, since=since)
        return CoordinatorResult(response.body, "remote", fp)

    async def _admit(self, category: Category, deadline: float) -> None:
        while True:
            decision = self.budget.admit(category)
            if decision.action is AdmissionAction.PROCEED:
                return
            if decision.action is AdmissionAction.REFUSE:
                raise RateLimitedError(
                    f"{category.value} budget exhausted and reset time unknown",
                    category=category.value,
                )
            if self.clock() + decision.delay > deadline:
                raise RateLimitedError(
                    f"{category.value} budget exhausted",
                    retry_after=decision.delay,
                    category=category.value,
                )
            logger.info(f"Waiting {decision.delay:.1f}s for {category.value} budget reset")
            await self.sleep(decision.delay)

    async def _call_with_retry(
        self,
        request: ClientRequest,
        etag: Optional[str],
        deadline: float,
    ) -> RemoteResponse:
        state = RetryState()
        while True:
            await self._admit(request.category, deadline)
            try:
                response = await self._call(request, etag, deadline)
            except AuthError as e:
                self.budget.observe(e.rate_limit)
                self.lifecycle.mark_degraded(e.message)
                raise
            except RequestTimeout:
                raise
            except RelayError as e:
                self.budget.observe(e.rate_limit)
                if isinstance(e, RateLimitedError):
                    self.budget.exhaust(request.category, e.reset_at)
                nxt = self.retry_policy.next(state, e, self.rng)
                if nxt is None:
                    raise
                if self.clock() + nxt.delay > deadline:
                    raise RequestTimeout(
                        f"Gave up after {state.attempt} attempts: {e.message}"
                    )
                logger.warning(
                    f"Attempt {state.attempt} failed ({e.kind}: {e.message}); "
                    f"retrying in {nxt.delay:.2f}s"
                )
                if nxt.delay > 0:
                    await self.sleep(nxt.delay)
                state = nxt
                continue

            self.budget.observe(response.rate_limit)
            return response

    async def _call(
        self,
        request: ClientRequest,
        etag: Optional[str],
        deadline: float,
    ) -> RemoteResponse:
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise RequestTimeout("Request deadline elapsed before dispatch")
        self.remote_calls += 1
        try:
            return await asyncio.wait_for(
                self.remote.execute(request, etag=etag), timeout=remaining
            )
        except asyncio.TimeoutError:
            raise RequestTimeout("Request deadline elapsed during the GitHub call")
