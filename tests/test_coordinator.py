"""
Tests for the request coordinator: caching, coalescing, budget admission,
retries, invalidation and lifecycle interaction.

The remote is a scripted fake (one test drives a real GitHubClient on
httpx.MockTransport); time is a fake clock advanced by a fake
sleep, so retries and budget waits run instantly.
"""

import asyncio
import unittest
from collections import deque
from typing import Any, Dict, Optional

import httpx

from ghrelay.api.client import GitHubClient
from ghrelay.core.budget import RateBudgetController
from ghrelay.core.cache import ResponseCache
from ghrelay.core.coordinator import RequestCoordinator
from ghrelay.core.errors import (
    AuthError,
    PermanentError,
    RateLimitedError,
    RequestTimeout,
    ShuttingDown,
    TransientError,
)
from ghrelay.core.lifecycle import LifecycleManager, LifecycleState
from ghrelay.core.models import Category, ClientRequest, RateLimitInfo, RemoteResponse
from ghrelay.core.retry import RetryPolicy

VIEWER = "query { viewer { login } }"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRemote:
    """
    Scripted stand-in for GitHubClient.

    ``script`` items are returned (or raised) in order; when it runs dry a
    200 response numbered by call count is returned. ``gates`` hold calls to
    a given path (or "graphql") until the event is set.
    """

    def __init__(self):
        self.calls = []
        self.script = deque()
        self.gates: Dict[str, asyncio.Event] = {}

    def gate(self, key: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[key] = event
        return event

    async def execute(self, request: ClientRequest, etag: Optional[str] = None) -> RemoteResponse:
        self.calls.append((request, etag))
        gate = self.gates.get(request.path or "graphql")
        if gate is not None:
            await gate.wait()
        if self.script:
            item = self.script.popleft()
        else:
            item = RemoteResponse(200, body={"n": len(self.calls)})
        if isinstance(item, Exception):
            raise item
        return item


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class CoordinatorTestCase(unittest.IsolatedAsyncioTestCase):

    request_timeout = 120.0
    attempts = 4

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.sleeps = []
        self.remote = FakeRemote()
        self.budget = RateBudgetController(clock=self.clock)
        self.cache = ResponseCache(ttl=60, clock=self.clock)
        self.lifecycle = LifecycleManager(clock=self.clock)
        self.coordinator = RequestCoordinator(
            remote=self.remote,
            budget=self.budget,
            cache=self.cache,
            lifecycle=self.lifecycle,
            retry_policy=RetryPolicy(attempts=self.attempts, base=0.5, cap=8.0),
            request_timeout=self.request_timeout,
            sleep=self._sleep,
            clock=self.clock,
            rng=lambda: 0.5,
        )
        self.lifecycle.start()

    async def asyncTearDown(self):
        for gate in self.remote.gates.values():
            gate.set()
        await self.coordinator.cancel_all()

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.clock.now += delay
        await asyncio.sleep(0)

    def get(self, path: str = "/repos/o/r/issues") -> ClientRequest:
        return ClientRequest.rest("GET", path)


class TestCachingAndCoalescing(CoordinatorTestCase):

    async def test_fresh_read_served_from_cache(self):
        first = await self.coordinator.handle(self.get())
        second = await self.coordinator.handle(self.get())

        self.assertEqual(first.source, "remote")
        self.assertEqual(second.source, "cache")
        self.assertEqual(first.body, second.body)
        self.assertEqual(len(self.remote.calls), 1)

    async def test_read_decrements_budget(self):
        await self.coordinator.handle(self.get())
        self.assertEqual(self.budget.remaining(Category.REST), 4999)
        self.assertEqual(self.budget.remaining(Category.GRAPHQL), 5000)

    async def test_identical_concurrent_reads_share_one_call(self):
        gate = self.remote.gate("graphql")
        tasks = [
            asyncio.create_task(self.coordinator.handle(ClientRequest.graphql(VIEWER)))
            for _ in range(5)
        ]
        await settle()
        self.assertEqual(self.coordinator.inflight_count(), 1)

        gate.set()
        results = await asyncio.gather(*tasks)

        self.assertEqual(len(self.remote.calls), 1)
        self.assertEqual(sorted(r.source for r in results), ["coalesced"] * 4 + ["remote"])
        self.assertTrue(all(r.body == results[0].body for r in results))
        self.assertEqual(self.coordinator.inflight_count(), 0)

    async def test_failure_is_broadcast_to_every_waiter(self):
        gate = self.remote.gate("/repos/o/r/issues")
        self.remote.script.append(PermanentError("Not Found", status=404))
        tasks = [asyncio.create_task(self.coordinator.handle(self.get())) for _ in range(3)]
        await settle()
        gate.set()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        self.assertTrue(all(isinstance(r, PermanentError) for r in results))
        self.assertEqual(len(self.remote.calls), 1)
        self.assertEqual(len(self.cache), 0, "Errors are never cached")

    async def test_cancelled_waiter_does_not_cancel_shared_call(self):
        gate = self.remote.gate("/repos/o/r/issues")
        leaving = asyncio.create_task(self.coordinator.handle(self.get()))
        staying = asyncio.create_task(self.coordinator.handle(self.get()))
        await settle()

        leaving.cancel()
        await settle()
        gate.set()

        result = await staying
        self.assertEqual(result.body, {"n": 1})
        self.assertEqual(len(self.remote.calls), 1)
        self.assertTrue(leaving.cancelled())

    async def test_not_modified_refreshes_entry(self):
        self.remote.script.append(RemoteResponse(200, body=["issue"], etag='"v1"'))
        await self.coordinator.handle(self.get())

        self.clock.now += 61
        self.remote.script.append(RemoteResponse(304, etag='"v1"', not_modified=True))
        revalidated = await self.coordinator.handle(self.get())

        self.assertEqual(revalidated.source, "revalidated")
        self.assertEqual(revalidated.body, ["issue"])
        self.assertEqual(self.remote.calls[1][1], '"v1"')

        again = await self.coordinator.handle(self.get())
        self.assertEqual(again.source, "cache")
        self.assertEqual(len(self.remote.calls), 2)


class TestMutations(CoordinatorTestCase):

    async def test_mutation_invalidates_overlapping_reads(self):
        await self.coordinator.handle(self.get("/repos/o/r/issues"))
        await self.coordinator.handle(self.get("/repos/o/other"))

        await self.coordinator.handle(
            ClientRequest.rest("POST", "/repos/o/r/issues", body={"title": "bug"})
        )

        issues = await self.coordinator.handle(self.get("/repos/o/r/issues"))
        other = await self.coordinator.handle(self.get("/repos/o/other"))
        self.assertEqual(issues.source, "remote")
        self.assertEqual(other.source, "cache")

    async def test_graphql_mutation_invalidates_repo_reads(self):
        read = ClientRequest.graphql("query($owner: String!, $name: String!) { x }", {"owner": "o", "name": "r"})
        await self.coordinator.handle(read)

        await self.coordinator.handle(
            ClientRequest.graphql("mutation { addStar }", resource="repos/o/r")
        )
        self.assertEqual((await self.coordinator.handle(read)).source, "remote")

    async def test_mutations_never_coalesce_without_key(self):
        gate = self.remote.gate("/repos/o/r/issues")
        post = ClientRequest.rest("POST", "/repos/o/r/issues", body={"title": "t"})
        tasks = [asyncio.create_task(self.coordinator.handle(post)) for _ in range(2)]
        await settle()
        gate.set()
        await asyncio.gather(*tasks)
        self.assertEqual(len(self.remote.calls), 2)

    async def test_mutations_with_same_idempotency_key_coalesce(self):
        gate = self.remote.gate("/repos/o/r/issues")
        post = ClientRequest.rest("POST", "/repos/o/r/issues", body={"title": "t"}, idempotency_key="once")
        tasks = [asyncio.create_task(self.coordinator.handle(post)) for _ in range(2)]
        await settle()
        gate.set()
        await asyncio.gather(*tasks)
        self.assertEqual(len(self.remote.calls), 1)

    async def test_mutations_are_not_retried_on_permanent_error(self):
        self.remote.script.append(PermanentError("Validation Failed", status=422))
        with self.assertRaises(PermanentError):
            await self.coordinator.handle(ClientRequest.rest("POST", "/repos/o/r/issues", body={}))
        self.assertEqual(len(self.remote.calls), 1)

    async def test_read_in_flight_during_mutation_is_not_cached(self):
        gate = self.remote.gate("/repos/o/r/issues")
        read = asyncio.create_task(self.coordinator.handle(self.get("/repos/o/r/issues")))
        await settle()

        await self.coordinator.handle(
            ClientRequest.rest("PATCH", "/repos/o/r", body={"description": "new"})
        )
        gate.set()
        await read

        self.assertEqual(len(self.cache), 0)
        result = await self.coordinator.handle(self.get("/repos/o/r/issues"))
        self.assertEqual(result.source, "remote")


class TestRetryAndBudget(CoordinatorTestCase):

    async def test_transient_errors_are_retried_with_backoff(self):
        self.remote.script.extend([TransientError("502"), TransientError("502")])
        result = await self.coordinator.handle(self.get())

        self.assertEqual(result.source, "remote")
        self.assertEqual(len(self.remote.calls), 3)
        # rng=0.5 -> three quarters of the un-jittered delay
        self.assertEqual(self.sleeps, [0.375, 0.75])

    async def test_attempts_are_bounded(self):
        self.remote.script.extend([TransientError("502")] * 10)
        with self.assertRaises(TransientError):
            await self.coordinator.handle(self.get())
        self.assertEqual(len(self.remote.calls), self.attempts)

    async def test_waits_for_budget_reset(self):
        self.budget.observe(
            RateLimitInfo(Category.REST, remaining=0, reset_at=self.clock.now + 2)
        )
        result = await self.coordinator.handle(self.get())

        self.assertEqual(result.source, "remote")
        self.assertEqual(self.sleeps, [2.0])
        self.assertEqual(len(self.remote.calls), 1)

    async def test_other_category_is_not_blocked(self):
        self.budget.observe(
            RateLimitInfo(Category.REST, remaining=0, reset_at=self.clock.now + 30)
        )
        result = await self.coordinator.handle(ClientRequest.graphql(VIEWER))
        self.assertEqual(result.source, "remote")
        self.assertEqual(self.sleeps, [])

    async def test_refused_when_reset_unknown(self):
        self.budget.exhaust(Category.REST, None)
        with self.assertRaises(RateLimitedError):
            await self.coordinator.handle(self.get())
        self.assertEqual(self.remote.calls, [])

    async def test_remote_rate_limit_waits_for_reset(self):
        self.remote.script.append(RateLimitedError("spent", reset_at=self.clock.now + 5))
        result = await self.coordinator.handle(self.get())

        self.assertEqual(result.source, "remote")
        self.assertEqual(self.sleeps, [5.0])
        self.assertEqual(len(self.remote.calls), 2)

    async def test_headers_update_budget(self):
        info = RateLimitInfo(Category.REST, remaining=42, reset_at=self.clock.now + 100)
        self.remote.script.append(RemoteResponse(200, body={}, rate_limit=info))
        await self.coordinator.handle(self.get())
        self.assertEqual(self.budget.remaining(Category.REST), 42)

    async def test_failed_responses_update_budget(self):
        error = TransientError("GitHub server error 502")
        error.rate_limit = RateLimitInfo(Category.REST, remaining=4000, reset_at=self.clock.now + 100)
        self.remote.script.append(error)

        await self.coordinator.handle(self.get())
        # 4000 from the failed response, minus the retry's own admission
        self.assertEqual(self.budget.remaining(Category.REST), 3999)


class TestOutageRecovery(unittest.IsolatedAsyncioTestCase):

    async def test_outage_does_not_leave_budget_refusing(self):
        clock = FakeClock()
        outage = True

        def handler(request):
            status = 502 if outage else 200
            return httpx.Response(status, json={}, headers={"x-ratelimit-remaining": "4000"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(http.aclose)
        remote = GitHubClient("token", http=http)
        budget = RateBudgetController(rest_ceiling=6, reserve=1, clock=clock)
        lifecycle = LifecycleManager(clock=clock)

        async def sleep(delay):
            clock.now += delay

        coordinator = RequestCoordinator(
            remote=remote,
            budget=budget,
            cache=ResponseCache(ttl=60, clock=clock),
            lifecycle=lifecycle,
            retry_policy=RetryPolicy(attempts=2, base=0.5, cap=1.0),
            sleep=sleep,
            clock=clock,
            rng=lambda: 0.5,
        )
        lifecycle.start()

        for path in ("/a", "/b"):
            with self.assertRaises(TransientError):
                await coordinator.handle(ClientRequest.rest("GET", path))
        self.assertGreater(budget.remaining(Category.REST), 1)

        outage = False
        result = await coordinator.handle(ClientRequest.rest("GET", "/c"))
        self.assertEqual(result.source, "remote")


class TestDeadline(CoordinatorTestCase):

    request_timeout = 10.0

    async def test_budget_wait_past_deadline_fails_fast(self):
        self.budget.observe(
            RateLimitInfo(Category.REST, remaining=0, reset_at=self.clock.now + 30)
        )
        with self.assertRaises(RateLimitedError) as ctx:
            await self.coordinator.handle(self.get())
        self.assertEqual(ctx.exception.retry_after, 30.0)
        self.assertEqual(self.remote.calls, [])

    async def test_retry_after_past_deadline_times_out(self):
        self.remote.script.append(TransientError("secondary", retry_after=60))
        with self.assertRaises(RequestTimeout):
            await self.coordinator.handle(self.get())
        self.assertEqual(len(self.remote.calls), 1)


class TestWaitTimeout(CoordinatorTestCase):

    request_timeout = 0.05

    async def test_stuck_call_times_out(self):
        self.remote.gate("/repos/o/r/issues")
        with self.assertRaises(RequestTimeout):
            await self.coordinator.handle(self.get())


class TestLifecycleInteraction(CoordinatorTestCase):

    async def test_auth_error_degrades_and_serves_stale(self):
        await self.coordinator.handle(self.get("/repos/o/r/issues"))
        self.clock.now += 61

        self.remote.script.append(AuthError("Bad credentials"))
        with self.assertRaises(AuthError):
            await self.coordinator.handle(self.get("/user"))
        self.assertTrue(self.lifecycle.degraded)

        stale = await self.coordinator.handle(self.get("/repos/o/r/issues"))
        self.assertEqual(stale.source, "stale")

        calls = len(self.remote.calls)
        with self.assertRaises(AuthError):
            await self.coordinator.handle(self.get("/notifications"))
        self.assertEqual(len(self.remote.calls), calls, "No remote call while degraded")

    async def test_draining_refuses_new_work_and_finishes_in_flight(self):
        gate = self.remote.gate("/repos/o/r/issues")
        in_flight = asyncio.create_task(self.coordinator.handle(self.get()))
        await settle()

        shutdown = asyncio.create_task(self.lifecycle.shutdown(timeout=5))
        await settle()
        self.assertIs(self.lifecycle.state, LifecycleState.DRAINING)

        with self.assertRaises(ShuttingDown):
            await self.coordinator.handle(self.get("/user"))

        gate.set()
        self.assertTrue(await shutdown)
        self.assertEqual((await in_flight).source, "remote")
        self.assertIs(self.lifecycle.state, LifecycleState.STOPPED)

    async def test_shutdown_timeout_cancels_in_flight(self):
        self.remote.gate("/repos/o/r/issues")
        in_flight = asyncio.create_task(self.coordinator.handle(self.get()))
        await settle()

        drained = await self.lifecycle.shutdown(timeout=0.05)
        self.assertFalse(drained)
        with self.assertRaises(ShuttingDown):
            await in_flight
        self.assertEqual(self.coordinator.inflight_count(), 0)


if __name__ == "__main__":
    unittest.main()
