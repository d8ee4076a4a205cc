"""
Tests for lifecycle transitions, dispatch checks and the health report.
"""

import unittest

from ghrelay import __version__
from ghrelay.core.errors import AuthError, LifecycleError, ShuttingDown, TransientError
from ghrelay.core.lifecycle import LifecycleManager, LifecycleState


class TestLifecycleManager(unittest.IsolatedAsyncioTestCase):

    async def test_happy_path(self):
        lifecycle = LifecycleManager()
        self.assertIs(lifecycle.state, LifecycleState.STARTING)
        lifecycle.start()
        self.assertIs(lifecycle.state, LifecycleState.READY)

        drained = await lifecycle.shutdown(timeout=1)
        self.assertTrue(drained)
        self.assertIs(lifecycle.state, LifecycleState.STOPPED)

    async def test_transitions_are_one_way(self):
        lifecycle = LifecycleManager()
        lifecycle.start()
        with self.assertRaises(LifecycleError):
            lifecycle.start()

        await lifecycle.shutdown(timeout=1)
        with self.assertRaises(LifecycleError):
            lifecycle.start()

    async def test_second_shutdown_waits_for_first(self):
        lifecycle = LifecycleManager()
        lifecycle.start()
        await lifecycle.shutdown(timeout=1)
        self.assertTrue(await lifecycle.shutdown(timeout=1))

    async def test_drain_callbacks_run_sync_and_async(self):
        lifecycle = LifecycleManager()
        lifecycle.start()
        seen = []

        async def async_callback():
            seen.append(("async", lifecycle.state))

        lifecycle.add_drain_callback(lambda: seen.append(("sync", lifecycle.state)))
        lifecycle.add_drain_callback(async_callback)
        await lifecycle.shutdown(timeout=1)

        self.assertEqual(
            seen,
            [("sync", LifecycleState.DRAINING), ("async", LifecycleState.DRAINING)],
        )

    def test_check_dispatch_by_state(self):
        lifecycle = LifecycleManager()
        with self.assertRaises(TransientError):
            lifecycle.check_dispatch()

        lifecycle.start()
        lifecycle.check_dispatch()

        lifecycle.mark_degraded("Bad credentials")
        with self.assertRaises(AuthError) as ctx:
            lifecycle.check_dispatch()
        self.assertIn("Bad credentials", ctx.exception.message)

    async def test_draining_raises_shutting_down(self):
        lifecycle = LifecycleManager()
        lifecycle.start()
        await lifecycle.shutdown(timeout=1)
        with self.assertRaises(ShuttingDown):
            lifecycle.check_dispatch()

    def test_degraded_only_from_ready(self):
        lifecycle = LifecycleManager()
        lifecycle.mark_degraded("too early")
        self.assertFalse(lifecycle.degraded)

    def test_health_report(self):
        now = [100.0]
        lifecycle = LifecycleManager(clock=lambda: now[0])
        lifecycle.start()
        now[0] = 130.0

        health = lifecycle.health()
        self.assertEqual(health["state"], "ready")
        self.assertFalse(health["degraded"])
        self.assertEqual(health["uptime_seconds"], 30.0)
        self.assertEqual(health["version"], __version__)


if __name__ == "__main__":
    unittest.main()
