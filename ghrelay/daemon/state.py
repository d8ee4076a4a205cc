"""In-memory state for the daemon.

Holds every long-lived resource of one daemon process, built once at
startup from a DaemonConfig and the GitHub token:
- client: GitHubClient (one pooled httpx connection set, owns the token)
- budget: per-category rate budget
- cache: idempotent response cache
- lifecycle: state machine and health report
- coordinator: in-flight table tying the above together

Nothing here is a module-level singleton; tests build as many as they like.
"""

import time
from typing import Any, Dict, Optional

from ghrelay.api.client import GitHubClient
from ghrelay.core.budget import RateBudgetController
from ghrelay.core.cache import ResponseCache
from ghrelay.core.configs import DaemonConfig
from ghrelay.core.coordinator import Remote, RequestCoordinator
from ghrelay.core.lifecycle import LifecycleManager
from ghrelay.core.retry import RetryPolicy


class DaemonState:
    """
    Composition root for one daemon process.

    Thread safety: the daemon runs on a single asyncio loop. Budget and
    cache carry their own locks; everything else is loop-confined.
    """

    def __init__(
        self,
        config: DaemonConfig,
        token: Optional[str] = None,
        remote: Optional[Remote] = None,
    ):
        """
        Args:
            config: Daemon configuration
            token: GitHub token (ignored when ``remote`` is given)
            remote: Pre-built remote, used by tests instead of GitHubClient
        """
        self.config = config
        self.start_time = time.time()

        if remote is None:
            if not token:
                raise ValueError("A GitHub token is required to start the daemon")
            remote = GitHubClient(
                token=token,
                graphql_url=config.graphql_url,
                rest_url=config.rest_url,
                timeout=config.call_timeout,
            )
        self.client = remote
        # Set once the startup credential check has answered
        self.api_connected: Optional[bool] = None

        self.budget = RateBudgetController(
            graphql_ceiling=config.graphql_ceiling,
            rest_ceiling=config.rest_ceiling,
            reserve=config.reserve_threshold,
        )
        self.cache = ResponseCache(
            ttl=config.cache_ttl,
            max_entries=config.cache_max_entries,
        )
        self.lifecycle = LifecycleManager()
        self.coordinator = RequestCoordinator(
            remote=self.client,
            budget=self.budget,
            cache=self.cache,
            lifecycle=self.lifecycle,
            retry_policy=RetryPolicy(
                attempts=config.retry_attempts,
                base=config.retry_base_delay,
                cap=config.retry_max_delay,
            ),
            request_timeout=config.request_timeout,
        )

    async def close(self) -> None:
        """Release the remote connection pool."""
        aclose = getattr(self.client, "aclose", None)
        if aclose is not None:
            await aclose()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.lifecycle.health()
        stats["remote_calls"] = self.coordinator.remote_calls
        stats["api_connected"] = self.api_connected
        stats["socket_path"] = str(self.config.socket_path)
        return stats
