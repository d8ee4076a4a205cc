"""GitHub GraphQL and REST client with connection pooling.

A single httpx.AsyncClient is shared by every call so connections to
api.github.com are reused. Responses are classified into the relay's error
taxonomy and their rate-limit headers are parsed for the budget controller.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import httpx

from ghrelay import __version__
from ghrelay.core.configs import GRAPHQL_URL, REST_URL
from ghrelay.core.errors import (
    AuthError,
    InvalidParams,
    PermanentError,
    RateLimitedError,
    RelayError,
    TransientError,
)
from ghrelay.core.fingerprint import normalize_path
from ghrelay.core.models import (
    Category,
    ClientRequest,
    OperationKind,
    RateLimitInfo,
    RemoteResponse,
)

logger = logging.getLogger(__name__)

# GitHub asks clients to wait at least a minute after a secondary limit
# when no Retry-After is given.
SECONDARY_LIMIT_WAIT = 60.0


def _int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (seconds form only)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def parse_rate_limit(headers: httpx.Headers, category: Category) -> RateLimitInfo:
    """Extract x-ratelimit-* headers."""
    reset = _int_header(headers, "x-ratelimit-reset")
    return RateLimitInfo(
        category=category,
        remaining=_int_header(headers, "x-ratelimit-remaining"),
        limit=_int_header(headers, "x-ratelimit-limit"),
        reset_at=float(reset) if reset is not None else None,
        used=_int_header(headers, "x-ratelimit-used"),
    )


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        if body.get("message"):
            return str(body["message"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(e.get("message", e)) for e in errors if e)
    if isinstance(body, str) and body:
        return body[:500]
    return fallback


class GitHubClient:
    """GitHub API client with persistent connection pooling."""

    def __init__(
        self,
        token: str,
        graphql_url: str = GRAPHQL_URL,
        rest_url: str = REST_URL,
        timeout: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        """
        Create a new GitHub client.

        Args:
            token: GitHub token, sent as a Bearer credential on every call
            graphql_url: GraphQL endpoint
            rest_url: REST API root
            timeout: Per-call deadline in seconds
            http: Optional shared httpx.AsyncClient (tests inject one)
        """
        if not token:
            raise ValueError("A GitHub token is required")
        self._token = token
        self.graphql_url = graphql_url
        self.rest_url = rest_url.rstrip("/")
        self._rest_host = urlsplit(self.rest_url).netloc
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=5),
        )
        self._http.headers.update(
            {
                "User-Agent": f"ghrelay/{__version__}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )

    def __repr__(self) -> str:
        return f"GitHubClient(rest_url={self.rest_url!r}, token=***)"

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _headers(self, etag: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self._token}"}
        if etag:
            headers["If-None-Match"] = etag
        return headers

    def _rest_url(self, path: str) -> str:
        parts = urlsplit(path)
        if parts.netloc and parts.netloc != self._rest_host:
            raise InvalidParams(f"Only {self._rest_host} paths are relayed, got {path}")
        return f"{self.rest_url}/{normalize_path(path)}"

    async def execute(
        self,
        request: ClientRequest,
        etag: Optional[str] = None,
    ) -> RemoteResponse:
        """
        Run one request against GitHub.

        Args:
            request: The operation to perform
            etag: Validation token for a conditional REST GET

        Raises:
            AuthError, RateLimitedError, TransientError, PermanentError
        """
        try:
            if request.kind is OperationKind.REST:
                response = await self._http.request(
                    request.method,
                    self._rest_url(request.path),
                    params=request.params or None,
                    json=request.body,
                    headers=self._headers(etag if request.idempotent else None),
                )
            else:
                payload: Dict[str, Any] = {"query": request.query}
                if request.variables:
                    payload["variables"] = request.variables
                response = await self._http.post(
                    self.graphql_url,
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise TransientError(f"GitHub call timed out: {e}")
        except httpx.TransportError as e:
            raise TransientError(f"GitHub connection failed: {e}")

        logger.debug(
            f"{request.method or 'POST'} {request.path or 'graphql'} -> {response.status_code}"
        )
        return self._build_response(request, response)

    def _build_response(
        self,
        request: ClientRequest,
        response: httpx.Response,
    ) -> RemoteResponse:
        category = request.category
        info = parse_rate_limit(response.headers, category)
        status = response.status_code

        if status == 304:
            return RemoteResponse(
                status=status,
                etag=response.headers.get("etag"),
                not_modified=True,
                rate_limit=info,
            )

        body: Any = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = response.text

        try:
            if status >= 400:
                self._raise_for_status(status, body, response.headers, info)
            if request.kind is not OperationKind.REST:
                body = self._check_graphql(body, info)
        except RelayError as e:
            # Failed responses still report the budget
            e.rate_limit = info
            raise

        return RemoteResponse(
            status=status,
            body=body,
            etag=response.headers.get("etag"),
            rate_limit=info,
        )

    def _raise_for_status(
        self,
        status: int,
        body: Any,
        headers: httpx.Headers,
        info: RateLimitInfo,
    ) -> None:
        message = _error_message(body, f"GitHub returned {status}")

        if status == 401:
            raise AuthError(f"GitHub rejected the credential: {message}")

        if status in (403, 429):
            if info.remaining == 0:
                raise RateLimitedError(
                    f"Rate limit exhausted: {message}",
                    reset_at=info.reset_at,
                    category=info.category.value,
                )
            retry_after = parse_retry_after(headers.get("retry-after"))
            lowered = message.lower()
            if (
                retry_after is not None
                or status == 429
                or "secondary rate limit" in lowered
                or "abuse" in lowered
            ):
                raise TransientError(
                    f"Secondary rate limit: {message}",
                    retry_after=retry_after if retry_after is not None else SECONDARY_LIMIT_WAIT,
                )

        if status >= 500:
            raise TransientError(f"GitHub server error {status}: {message}")

        raise PermanentError(message, status=status, body=body)

    def _check_graphql(self, body: Any, info: RateLimitInfo) -> Any:
        if not isinstance(body, dict):
            raise PermanentError("GraphQL response is not a JSON object", status=200, body=body)

        data = body.get("data")
        errors = body.get("errors") or []
        if isinstance(data, dict):
            rate = data.get("rateLimit")
            if isinstance(rate, dict) and rate.get("cost") is not None:
                info.cost = int(rate["cost"])

        if data is None and errors:
            if any(isinstance(e, dict) and e.get("type") == "RATE_LIMITED" for e in errors):
                raise RateLimitedError(
                    "GraphQL rate limit exhausted",
                    reset_at=info.reset_at,
                    category=Category.GRAPHQL.value,
                )
            raise PermanentError(
                f"GraphQL errors: {_error_message(body, 'unknown error')}",
                status=200,
                body=body,
            )
        return body

    async def ping(self) -> bool:
        """Check that the credential works (viewer login is non-empty)."""
        response = await self.execute(ClientRequest.graphql("query { viewer { login } }"))
        viewer = (response.body.get("data") or {}).get("viewer") or {}
        return bool(viewer.get("login"))
