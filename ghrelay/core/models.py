"""Data types exchanged between the listener, coordinator and remote client."""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class OperationKind(str, Enum):
    GRAPHQL_QUERY = "graphql_query"
    GRAPHQL_MUTATION = "graphql_mutation"
    REST = "rest"


class Category(str, Enum):
    """Rate-limit budgets. GitHub meters GraphQL points and REST calls apart."""

    GRAPHQL = "graphql"
    REST = "rest"


IDEMPOTENT_REST_METHODS = frozenset({"GET", "HEAD"})
MUTATING_REST_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})

_GRAPHQL_TOKEN = re.compile(
    r'"""[\s\S]*?"""|"(?:\\.|[^"\\\n])*"|#[^\n]*|[_A-Za-z][_0-9A-Za-z]*|[\s\S]'
)


def is_graphql_mutation(query: str) -> bool:
    """
    True if the GraphQL document defines a mutation operation anywhere.

    Only the keyword that opens each top-level definition is inspected;
    comments, strings and everything inside braces or parentheses are
    skipped.
    """
    depth = 0
    at_definition = True
    for match in _GRAPHQL_TOKEN.finditer(query or ""):
        token = match.group()
        if token in ("{", "("):
            depth += 1
        elif token in ("}", ")"):
            depth = max(0, depth - 1)
            if depth == 0 and token == "}":
                at_definition = True
        elif depth == 0 and at_definition and (token[0].isalpha() or token[0] == "_"):
            if token == "mutation":
                return True
            at_definition = False
    return False


@dataclass(frozen=True)
class ClientRequest:
    """A single decoded request from a local client.

    GraphQL requests carry ``query`` and ``variables``; REST requests carry
    ``method``, ``path``, ``params`` (query string) and ``body``.
    """

    kind: OperationKind
    query: str = ""
    variables: Dict[str, Any] = field(default_factory=dict)
    method: str = ""
    path: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    idempotency_key: Optional[str] = None
    resource: Optional[str] = None
    received_at: float = field(default_factory=time.time)

    @classmethod
    def graphql(
        cls,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> "ClientRequest":
        kind = (
            OperationKind.GRAPHQL_MUTATION
            if is_graphql_mutation(query)
            else OperationKind.GRAPHQL_QUERY
        )
        return cls(
            kind=kind,
            query=query,
            variables=dict(variables or {}),
            idempotency_key=idempotency_key,
            resource=resource,
        )

    @classmethod
    def rest(
        cls,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        idempotency_key: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> "ClientRequest":
        return cls(
            kind=OperationKind.REST,
            method=method.upper(),
            path=path,
            params=dict(params or {}),
            body=body,
            idempotency_key=idempotency_key,
            resource=resource,
        )

    @property
    def category(self) -> Category:
        if self.kind is OperationKind.REST:
            return Category.REST
        return Category.GRAPHQL

    @property
    def idempotent(self) -> bool:
        if self.kind is OperationKind.GRAPHQL_QUERY:
            return True
        if self.kind is OperationKind.REST:
            return self.method in IDEMPOTENT_REST_METHODS
        return False


@dataclass
class RateLimitInfo:
    """Rate-limit metadata parsed from one GitHub response."""

    category: Category
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_at: Optional[float] = None
    used: Optional[int] = None
    cost: int = 1


@dataclass
class RemoteResponse:
    status: int
    body: Any = None
    etag: Optional[str] = None
    not_modified: bool = False
    rate_limit: Optional[RateLimitInfo] = None


@dataclass
class CacheEntry:
    fingerprint: str
    body: Any
    fresh_until: float
    resource_key: str
    etag: Optional[str] = None
    inserted_at: float = field(default_factory=time.time)
    category: Optional[Category] = None

    def is_fresh(self, now: float) -> bool:
        return now < self.fresh_until
