"""Error taxonomy shared by every component of the relay.

Each error carries a wire ``kind`` so the server can report it to clients
without leaking internal exception types.
"""

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class for all errors that may be reported to a client."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        # RateLimitInfo parsed from the failing response, when there was one
        self.rate_limit = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "retry_after": self.retry_after,
        }


class ProtocolError(RelayError):
    """Malformed local request. Fails the connection, never the process."""

    kind = "protocol"


class InvalidParams(RelayError):
    """A well-formed request whose parameters are unusable."""

    kind = "invalid_params"


class AuthError(RelayError):
    """The credential was rejected by GitHub."""

    kind = "auth"


class TransientError(RelayError):
    """Network failure, 5xx or secondary rate limiting. Safe to retry."""

    kind = "transient"
    retryable = True


class PermanentError(RelayError):
    """GitHub rejected the operation. Never retried."""

    kind = "permanent"

    def __init__(
        self,
        message: str = "",
        status: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        return data


class RateLimitedError(RelayError):
    """Primary rate limit exhausted, or admission refused locally.

    ``reset_at`` is the epoch second at which GitHub restores the budget,
    when known.
    """

    kind = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str = "",
        reset_at: Optional[float] = None,
        retry_after: Optional[float] = None,
        category: Optional[str] = None,
    ):
        super().__init__(message, retry_after=retry_after)
        self.reset_at = reset_at
        self.category = category


class ShuttingDown(RelayError):
    """The daemon is draining and accepts no new remote work."""

    kind = "shutting_down"


class RequestTimeout(RelayError):
    """The overall request deadline elapsed across all attempts."""

    kind = "timeout"


class LifecycleError(Exception):
    """Illegal lifecycle transition."""


class SocketInUseError(RuntimeError):
    """Another live daemon already holds the socket path."""


_KINDS = {
    cls.kind: cls
    for cls in (
        RelayError,
        ProtocolError,
        InvalidParams,
        AuthError,
        TransientError,
        PermanentError,
        RateLimitedError,
        ShuttingDown,
        RequestTimeout,
    )
}


def error_from_dict(data: Dict[str, Any]) -> RelayError:
    """Rebuild a RelayError from its wire form (used by the socket client)."""
    cls = _KINDS.get(data.get("kind", ""), RelayError)
    message = data.get("message", "")
    if cls is PermanentError:
        return PermanentError(message, status=data.get("status"))
    error = cls(message)
    error.retry_after = data.get("retry_after")
    return error
