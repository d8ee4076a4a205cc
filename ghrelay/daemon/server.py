"""Async Unix socket server for the ghrelay daemon.

This module implements the long-running daemon process that:
1. Owns the GitHub token and one pooled HTTP client
2. Shares one rate budget, response cache and in-flight table between
   every local client
3. Handles newline-delimited JSON requests over a Unix socket

Usage:
    python -m ghrelay.daemon.server [--service-dir PATH] [--daemonize]

    Or use the CLI:
    ghrelay start
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional, Set

from ghrelay.api.methods import lookup_method, method_list
from ghrelay.core.configs import DaemonConfig, get_daemon_config, resolve_token
from ghrelay.core.errors import (
    AuthError,
    InvalidParams,
    ProtocolError,
    RelayError,
    SocketInUseError,
)
from ghrelay.core.models import ClientRequest
from ghrelay.daemon.protocol import deserialize_request, serialize_response
from ghrelay.daemon.state import DaemonState

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Seconds answered requests get to write their responses during cleanup
RESPONSE_FLUSH_TIMEOUT = 1.0

CORE_METHODS = [
    {
        "name": "graphql",
        "description": "Run a GraphQL query or mutation",
        "params": ["query", "variables", "idempotency_key", "resource"],
    },
    {
        "name": "rest",
        "description": "Call a REST endpoint",
        "params": ["method", "path", "query", "body", "idempotency_key", "resource"],
    },
    {"name": "health", "description": "Daemon state, budgets and cache stats", "params": []},
    {"name": "methods", "description": "List available methods", "params": []},
    {"name": "shutdown", "description": "Drain and stop the daemon", "params": []},
]


def _optional_str(params: Dict[str, Any], key: str) -> Optional[str]:
    value = params.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidParams(f"Parameter '{key}' must be a string")
    return value


def _optional_dict(params: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = params.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidParams(f"Parameter '{key}' must be an object")
    return value


class DaemonServer:
    """
    Async Unix socket server for the daemon.

    Each connection may carry many requests. Every request runs in its own
    task and writes its response under a per-connection lock, so responses
    may return out of order and are correlated by id.
    """

    def __init__(
        self,
        config: DaemonConfig,
        token: Optional[str] = None,
        state: Optional[DaemonState] = None,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize daemon server.

        Args:
            config: Daemon configuration (socket, pid path, timeouts)
            token: GitHub token, used to build the state if none is given
            state: Pre-built state (tests inject one with a fake remote)
            install_signal_handlers: Handle SIGTERM/SIGINT (off in tests)
        """
        self.config = config
        self.socket_path = config.socket_path
        self.pid_path = config.pid_path
        self.idle_timeout = config.idle_timeout
        self.install_signal_handlers = install_signal_handlers

        self._token = token
        self.state: Optional[DaemonState] = state
        self.server: Optional[asyncio.Server] = None
        self.last_request_time: float = time.time()
        self._shutdown_event: asyncio.Event = asyncio.Event()
        self._writers: Set[asyncio.StreamWriter] = set()
        self._requests: Set["asyncio.Task[None]"] = set()
        self._idle_task: Optional["asyncio.Task[None]"] = None

    async def start(self) -> None:
        """Start the daemon server and serve until shutdown."""
        await self.open()
        await self.serve_until_shutdown()

    async def open(self) -> None:
        """Bind the socket and move to READY."""
        logger.info("Starting ghrelay daemon...")

        if self.state is None:
            self.state = DaemonState(self.config, token=self._token)
        # The state owns the token from here on.
        self._token = None

        await self._check_socket()

        # Create parent directory
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        # Write PID file
        self.pid_path.write_text(str(os.getpid()))

        self.server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
            limit=self.config.max_line_bytes,
        )

        # Set socket permissions (owner only)
        os.chmod(self.socket_path, 0o600)

        self.state.lifecycle.add_drain_callback(self._stop_accepting)
        self.state.lifecycle.start()
        logger.info(f"Daemon listening on {self.socket_path}")
        await self._verify_credential()

        if self.install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._signal_handler)

        if self.idle_timeout > 0:
            self._idle_task = asyncio.create_task(self._idle_watcher())

    async def serve_until_shutdown(self) -> None:
        """Wait for a shutdown request, drain in-flight calls, then clean up."""
        await self._shutdown_event.wait()
        try:
            drained = await self.state.lifecycle.shutdown(self.config.shutdown_timeout)
            if not drained:
                logger.warning("Some in-flight calls were cancelled during shutdown")
        finally:
            await self._cleanup()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def _verify_credential(self) -> None:
        """Check the token once at startup; a rejected one degrades the daemon."""
        started = time.monotonic()
        try:
            connected = await self.state.client.ping()
        except AuthError as e:
            self.state.api_connected = False
            self.state.lifecycle.mark_degraded(e.message)
            return
        except RelayError as e:
            logger.warning(f"Could not verify the GitHub credential: {e.kind}: {e.message}")
            return
        self.state.api_connected = connected
        if connected:
            logger.info(f"GitHub credential verified ({time.monotonic() - started:.2f}s)")
        else:
            logger.warning("GitHub returned no viewer login for the credential")

    async def _check_socket(self) -> None:
        """Refuse to start over a live daemon; remove a stale socket file."""
        if not self.socket_path.exists():
            return
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path)), timeout=2.0
            )
        except (OSError, asyncio.TimeoutError):
            logger.info(f"Removing stale socket {self.socket_path}")
            self.socket_path.unlink(missing_ok=True)
            return

        writer.close()
        raise SocketInUseError(f"Another daemon is already listening on {self.socket_path}")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Read request lines until EOF or a protocol error."""
        self._writers.add(writer)
        write_lock = asyncio.Lock()
        tasks: Set["asyncio.Task[None]"] = set()

        try:
            while True:
                try:
                    line = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    error = ProtocolError(
                        f"Request line exceeds {self.config.max_line_bytes} bytes"
                    )
                    await self._write(writer, write_lock, serialize_response(
                        None, "error", error=error.to_dict()
                    ))
                    break
                except ConnectionError:
                    break

                if not line:
                    break
                if not line.strip():
                    continue

                # Update activity timestamp
                self.last_request_time = time.time()

                try:
                    request = deserialize_request(line)
                except ProtocolError as e:
                    logger.warning(f"Closing connection after protocol error: {e.message}")
                    await self._write(writer, write_lock, serialize_response(
                        None, "error", error=e.to_dict()
                    ))
                    break

                task = asyncio.create_task(self._process(request, writer, write_lock))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
                self._requests.add(task)
                task.add_done_callback(self._requests.discard)
        finally:
            # Only this connection's waits are cancelled; shared calls go on.
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _process(
        self,
        request: Dict[str, Any],
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
    ) -> None:
        request_id = request["id"]
        try:
            result = await self._route(request["method"], request["params"])
            response = serialize_response(request_id, "ok", result=result)
        except RelayError as e:
            response = serialize_response(request_id, "error", error=e.to_dict())
        except Exception as e:
            logger.exception(f"Error handling {request['method']}: {e}")
            error = RelayError(f"Internal error: {e}")
            response = serialize_response(request_id, "error", error=error.to_dict())

        await self._write(writer, write_lock, response)

    async def _write(
        self,
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
        data: bytes,
    ) -> None:
        async with write_lock:
            if writer.is_closing():
                logger.debug("Client went away; dropping response")
                return
            writer.write(data)
            try:
                await writer.drain()
            except ConnectionError as e:
                logger.debug(f"Client went away; dropping response: {e}")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _route(self, method: str, params: Dict[str, Any]) -> Any:
        if method == "graphql":
            return await self._handle_graphql(params)
        if method == "rest":
            return await self._handle_rest(params)
        if method == "health":
            return self.state.get_stats()
        if method == "methods":
            return {"methods": CORE_METHODS + method_list()}
        if method == "shutdown":
            logger.info("Shutdown requested via socket")
            self.request_shutdown()
            return {"message": "Shutting down"}

        info = lookup_method(method)
        if info is None:
            raise InvalidParams(f"Unknown method: {method}")
        return await info.handler(self.state.coordinator, params)

    async def _handle_graphql(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = params.get("query")
        if not isinstance(query, str) or not query.strip():
            raise InvalidParams("Missing 'query' parameter")

        request = ClientRequest.graphql(
            query,
            variables=_optional_dict(params, "variables"),
            idempotency_key=_optional_str(params, "idempotency_key"),
            resource=_optional_str(params, "resource"),
        )
        result = await self.state.coordinator.handle(request)
        return {"body": result.body, "source": result.source}

    async def _handle_rest(self, params: Dict[str, Any]) -> Dict[str, Any]:
        path = params.get("path")
        if not isinstance(path, str) or not path.strip():
            raise InvalidParams("Missing 'path' parameter")
        method = params.get("method") or "GET"
        if not isinstance(method, str):
            raise InvalidParams("Parameter 'method' must be a string")

        request = ClientRequest.rest(
            method,
            path,
            params=_optional_dict(params, "query"),
            body=params.get("body"),
            idempotency_key=_optional_str(params, "idempotency_key"),
            resource=_optional_str(params, "resource"),
        )
        result = await self.state.coordinator.handle(request)
        return {"body": result.body, "source": result.source}

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _stop_accepting(self) -> None:
        if self.server is not None:
            self.server.close()

    async def _idle_watcher(self) -> None:
        """Watch for idle timeout and shutdown if exceeded."""
        interval = min(60.0, self.idle_timeout)
        while not self._shutdown_event.is_set():
            await asyncio.sleep(interval)

            if self.state.coordinator.inflight_count():
                continue
            idle_time = time.time() - self.last_request_time
            if idle_time > self.idle_timeout:
                logger.info(
                    f"Idle timeout reached ({idle_time:.0f}s > {self.idle_timeout:.0f}s), "
                    "shutting down"
                )
                self._shutdown_event.set()
                break

    def _signal_handler(self) -> None:
        """Handle SIGTERM/SIGINT for graceful shutdown."""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def _cleanup(self) -> None:
        """Cleanup on shutdown."""
        logger.info("Cleaning up...")

        if self._idle_task is not None:
            self._idle_task.cancel()

        # Let answered requests flush their responses
        if self._requests:
            _, pending = await asyncio.wait(set(self._requests), timeout=RESPONSE_FLUSH_TIMEOUT)
            for task in pending:
                task.cancel()

        # Close remaining client connections so wait_closed() can return
        for writer in list(self._writers):
            writer.close()

        if self.server:
            self.server.close()
            await self.server.wait_closed()

        if self.state:
            await self.state.close()

        # Remove socket and PID file
        self.socket_path.unlink(missing_ok=True)
        self.pid_path.unlink(missing_ok=True)

        logger.info("Daemon stopped")


def run_daemon(
    service_dir: Optional[str] = None,
    daemonize: bool = False,
) -> None:
    """
    Run the daemon server.

    Args:
        service_dir: Directory holding the socket, PID file, log and config
            (default: ~/.ghrelay/services/github)
        daemonize: Fork to background (Unix only)
    """
    # Fail in the foreground on bad config or a missing token
    try:
        config = get_daemon_config(service_dir=Path(service_dir) if service_dir else None)
        token = resolve_token(config.service_dir)
    except ValueError as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    if daemonize:
        # Double-fork to daemonize
        pid = os.fork()
        if pid > 0:
            # Parent exits
            sys.exit(0)

        os.setsid()

        pid = os.fork()
        if pid > 0:
            sys.exit(0)

        sys.stdin.close()

        # Redirect stdout/stderr to log file
        config.log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(config.log_path, "a")
        os.dup2(log_file.fileno(), sys.stdout.fileno())
        os.dup2(log_file.fileno(), sys.stderr.fileno())

    server = DaemonServer(config, token=token)
    try:
        asyncio.run(server.start())
    except SocketInUseError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="ghrelay daemon server")
    parser.add_argument(
        "--service-dir",
        help="Directory for socket, PID file, log and config",
    )
    parser.add_argument(
        "--daemonize",
        action="store_true",
        help="Fork to background",
    )

    args = parser.parse_args()

    run_daemon(
        service_dir=args.service_dir,
        daemonize=args.daemonize,
    )
