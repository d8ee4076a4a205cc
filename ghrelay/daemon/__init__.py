"""Daemon side of ghrelay.

Architecture:
- DaemonState (ghrelay.daemon.state): composition root owning the GitHub
  client, rate budget, response cache, lifecycle manager and coordinator
- DaemonServer (ghrelay.daemon.server): async Unix socket server speaking
  newline-delimited JSON
- DaemonClient: blocking socket client for short-lived tools and the CLI

Only the client and the protocol are exported here, so importing the
package stays light; the server and state are imported from their modules.
"""

from ghrelay.daemon.client import DaemonClient
from ghrelay.daemon.protocol import (
    serialize_request,
    deserialize_request,
    serialize_response,
    deserialize_response,
)

__all__ = [
    "DaemonClient",
    "serialize_request",
    "deserialize_request",
    "serialize_response",
    "deserialize_response",
]
