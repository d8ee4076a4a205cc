"""Newline-delimited JSON protocol for daemon IPC.

One JSON object per line in both directions. A connection may carry many
requests; responses are correlated by ``id`` and may arrive out of order.

Request format:
    {
        "id": str | int,        # Chosen by the client, echoed back
        "v": 1,                 # Protocol version
        "method": str,          # graphql | rest | health | methods | shutdown | github.*
        "params": {...}         # Method-specific parameters
    }

Response format:
    {
        "id": str | int | None, # None when the request could not be parsed
        "status": "ok" | "error",
        "result": Any,
        "error": None | {"kind": str, "message": str, "retry_after": float | None}
    }
"""

import json
from typing import Any, Dict, Optional, Union

from ghrelay.core.errors import ProtocolError

PROTOCOL_VERSION = 1

RequestId = Union[str, int, None]


def serialize_request(
    request_id: RequestId,
    method: str,
    params: Optional[Dict[str, Any]] = None,
) -> bytes:
    """
    Serialize request to one newline-terminated line.

    Args:
        request_id: Client-chosen correlation id
        method: Method name
        params: Method parameters

    Returns:
        UTF-8 encoded JSON bytes ending in a newline
    """
    request = {
        "id": request_id,
        "v": PROTOCOL_VERSION,
        "method": method,
        "params": params or {},
    }
    return json.dumps(request).encode("utf-8") + b"\n"


def deserialize_request(data: bytes) -> Dict[str, Any]:
    """
    Decode and validate one request line.

    Raises:
        ProtocolError: If the line is not a well-formed request object
    """
    try:
        request = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}")

    if not isinstance(request, dict):
        raise ProtocolError("Request must be a JSON object")

    request_id = request.get("id")
    if request_id is None or isinstance(request_id, bool) or not isinstance(request_id, (str, int)):
        raise ProtocolError("Missing or invalid 'id'")

    version = request.get("v", PROTOCOL_VERSION)
    if version != PROTOCOL_VERSION:
        raise ProtocolError(f"Unsupported protocol version: {version!r}")

    method = request.get("method")
    if not isinstance(method, str) or not method:
        raise ProtocolError("Missing or invalid 'method'")

    params = request.get("params")
    if params is None:
        request["params"] = {}
    elif not isinstance(params, dict):
        raise ProtocolError("'params' must be a JSON object")

    return request


def serialize_response(
    request_id: RequestId,
    status: str,
    result: Any = None,
    error: Optional[Dict[str, Any]] = None,
) -> bytes:
    """
    Serialize response to one newline-terminated line.

    Args:
        request_id: Id of the request being answered
        status: "ok" or "error"
        result: Method result
        error: Error dict (kind, message, retry_after) if status is "error"
    """
    response = {
        "id": request_id,
        "status": status,
        "result": result,
        "error": error,
    }
    return json.dumps(response, default=str).encode("utf-8") + b"\n"


def deserialize_response(data: bytes) -> Dict[str, Any]:
    """
    Deserialize one response line.

    Raises:
        json.JSONDecodeError: If data is not valid JSON
    """
    return json.loads(data.decode("utf-8"))
