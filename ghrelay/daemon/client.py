"""Lightweight client for daemon communication.

This module provides a thin client that connects to the daemon via Unix socket.
It never imports the server, the daemon state or httpx, so short-lived tools
(and the CLI) start fast.

Usage:
    client = DaemonClient()
    if client.is_daemon_running():
        body = client.graphql("query { viewer { login } }")["body"]
"""

import itertools
import logging
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ghrelay.core.configs import default_service_dir
from ghrelay.core.errors import error_from_dict
from ghrelay.daemon.protocol import deserialize_response, serialize_request

logger = logging.getLogger(__name__)

# Every way of running the daemon has this on its command line
DAEMON_COMMAND_MARKER = "ghrelay"


def get_socket_path() -> Path:
    """Get default socket path."""
    return default_service_dir() / "daemon.sock"


def get_pid_path() -> Path:
    """Get default PID file path."""
    return default_service_dir() / "daemon.pid"


class DaemonClient:
    """
    Blocking client for the daemon socket.

    One connection per call, one request per connection. Errors reported by
    the daemon are raised as the matching RelayError subclass.
    """

    def __init__(
        self,
        socket_path: Optional[Path] = None,
        timeout: float = 130.0,
    ):
        """
        Initialize client.

        Args:
            socket_path: Path to Unix socket
            timeout: Socket timeout in seconds; a little above the daemon's
                default request deadline
        """
        self.socket_path = Path(socket_path) if socket_path else get_socket_path()
        self.timeout = timeout
        self._ids = itertools.count(1)

    def is_daemon_running(self) -> bool:
        """
        Check if daemon is running and healthy.

        Returns True if:
        1. Socket file exists
        2. Can connect to socket
        3. Health check returns OK
        """
        if not self.socket_path.exists():
            return False

        try:
            response = self._send_request("health", timeout=2.0)
            return response.get("status") == "ok"
        except (socket.timeout, OSError):
            return False

    def start_daemon(self, service_dir: Optional[Path] = None) -> bool:
        """
        Start the daemon in background and wait for it to answer.

        Returns True if daemon started successfully.
        """
        cmd = [sys.executable, "-m", "ghrelay.daemon.server", "--daemonize"]
        if service_dir is not None:
            cmd += ["--service-dir", str(service_dir)]
        subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        # Wait for daemon to be ready (max 5 seconds)
        for _ in range(50):
            time.sleep(0.1)
            if self.is_daemon_running():
                return True

        return False

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call a daemon method and return its result.

        Raises:
            RelayError: The daemon answered with an error
            OSError: Daemon not reachable
        """
        response = self._send_request(method, params)
        if response.get("status") == "ok":
            return response.get("result")
        raise error_from_dict(response.get("error") or {})

    def graphql(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run a GraphQL document. Returns {"body": {...}, "source": str}."""
        params: Dict[str, Any] = {"query": query, "variables": variables or {}}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        if resource:
            params["resource"] = resource
        return self.call("graphql", params)

    def rest(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, Any]] = None,
        body: Any = None,
        idempotency_key: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Call a REST endpoint. Returns {"body": ..., "source": str}."""
        params: Dict[str, Any] = {"method": method, "path": path}
        if query:
            params["query"] = query
        if body is not None:
            params["body"] = body
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        if resource:
            params["resource"] = resource
        return self.call("rest", params)

    def health(self) -> Optional[Dict[str, Any]]:
        """
        Get daemon health and stats.

        Returns stats dict or None if daemon not running.
        """
        try:
            response = self._send_request("health", timeout=2.0)
        except (socket.timeout, OSError):
            return None
        if response.get("status") == "ok":
            return response.get("result")
        return None

    def shutdown(self) -> bool:
        """
        Request daemon shutdown.

        Returns True if shutdown was acknowledged.
        """
        try:
            response = self._send_request("shutdown", timeout=5.0)
            return response.get("status") == "ok"
        except (socket.timeout, OSError):
            return False

    def _send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send one request line and read one response line.

        Raises:
            ConnectionRefusedError: If daemon not running
            socket.timeout: If request times out
            OSError: Other socket errors
        """
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout or self.timeout)

        try:
            sock.connect(str(self.socket_path))
            sock.sendall(serialize_request(next(self._ids), method, params))

            chunks = []
            while True:
                chunk = sock.recv(65536)
                if not chunk:
                    break
                chunks.append(chunk)
                if chunk.endswith(b"\n"):
                    break

            data = b"".join(chunks)
            if not data.strip():
                return {
                    "status": "error",
                    "error": {"kind": "protocol", "message": "Empty response"},
                }
            return deserialize_response(data.split(b"\n", 1)[0])

        finally:
            sock.close()


def _is_daemon_process(pid: int) -> bool:
    """True if ``pid`` is running a ghrelay command line."""
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0 and DAEMON_COMMAND_MARKER in result.stdout


def stop_by_pid(pid_path: Optional[Path] = None) -> bool:
    """
    Send SIGTERM to the daemon named in the PID file.

    Fallback for `ghrelay stop` when the socket does not answer. The PID is
    only signalled if it still runs ghrelay; a reused PID is left alone.
    Removes the PID file when its process is gone. Returns True if a signal
    was delivered.
    """
    pid_path = pid_path or get_pid_path()
    if not pid_path.exists():
        return False
    try:
        pid = int(pid_path.read_text().strip())
    except ValueError:
        pid_path.unlink(missing_ok=True)
        return False

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        pid_path.unlink(missing_ok=True)
        return False
    except PermissionError:
        logger.warning(f"Refusing to stop PID {pid}: owned by another user")
        return False

    if not _is_daemon_process(pid):
        logger.warning(f"Refusing to stop PID {pid}: unexpected process")
        return False

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pid_path.unlink(missing_ok=True)
        return False
    return True
