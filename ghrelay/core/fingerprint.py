"""Request fingerprints and resource keys.

A fingerprint identifies a logically-equivalent remote operation and is
used both as the cache key and as the in-flight coalescing key. A resource
key names the GitHub resource an operation touches, so mutations can
invalidate overlapping cached reads.
"""

import hashlib
import json
from typing import Any, Dict, List
from urllib.parse import urlsplit

from ghrelay.core.models import ClientRequest, OperationKind


def normalize_query(query: str) -> str:
    """Collapse insignificant whitespace in a GraphQL document."""
    return " ".join((query or "").split())


def normalize_path(path: str) -> str:
    """Strip scheme/host, query string and surrounding slashes from a path."""
    parts = urlsplit(path or "")
    return parts.path.strip("/")


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(request: ClientRequest) -> str:
    """
    Derive the deterministic fingerprint of a request.

    Reads ignore the caller's idempotency hint, so structurally identical
    reads always coalesce. Mutations include it, so two writes only share
    a fingerprint when the caller says they are the same write.
    """
    if request.kind is OperationKind.REST:
        material: Dict[str, Any] = {
            "kind": request.kind.value,
            "method": request.method,
            "path": normalize_path(request.path),
            "params": {str(k): str(v) for k, v in request.params.items()},
            "body": request.body,
        }
    else:
        material = {
            "kind": request.kind.value,
            "query": normalize_query(request.query),
            "variables": request.variables,
        }
    if not request.idempotent:
        material["idempotency_key"] = request.idempotency_key
    return hashlib.sha256(_canonical(material).encode("utf-8")).hexdigest()


def resource_key(request: ClientRequest) -> str:
    """
    Name the resource a request reads or writes.

    Returns an empty string when no key can be derived (a GraphQL document
    without owner/name variables and no caller-supplied resource).
    """
    if request.resource:
        return normalize_path(request.resource).lower()
    if request.kind is OperationKind.REST:
        return normalize_path(request.path).lower()

    variables = request.variables or {}
    owner = variables.get("owner")
    name = variables.get("name") or variables.get("repo")
    if owner and name:
        return f"repos/{owner}/{name}".lower()
    return ""


def _segments(key: str) -> List[str]:
    return [s for s in key.split("/") if s]


def keys_overlap(a: str, b: str) -> bool:
    """True if one key is a segment-wise prefix of the other."""
    sa, sb = _segments(a), _segments(b)
    if not sa or not sb:
        return False
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]
