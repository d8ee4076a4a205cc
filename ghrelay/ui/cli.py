"""Main CLI entry point - start, stop, inspect and call the daemon."""

import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from ghrelay.core.configs import default_service_dir
from ghrelay.core.errors import RelayError
from ghrelay.daemon.client import DaemonClient, stop_by_pid

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="ghrelay - a local relay daemon for the GitHub API.",
)


# ============================================================================
# Shared Setup
# ============================================================================

def _service_dir(service_dir: Optional[Path]) -> Path:
    return service_dir.expanduser() if service_dir else default_service_dir()


def _client(service_dir: Optional[Path], timeout: float = 130.0) -> DaemonClient:
    return DaemonClient(socket_path=_service_dir(service_dir) / "daemon.sock", timeout=timeout)


def _parse_params(pairs: List[str]) -> Dict[str, Any]:
    """
    Parse key=value pairs. Values are read as JSON when they parse
    (numbers, booleans, objects), otherwise kept as strings.
    """
    params: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            typer.echo(f"Invalid parameter '{pair}', expected key=value", err=True)
            raise typer.Exit(2)
        try:
            params[key] = json.loads(value)
        except json.JSONDecodeError:
            params[key] = value
    return params


# ============================================================================
# Commands
# ============================================================================

ServiceDirOption = typer.Option(
    None, "--service-dir", help="Directory for socket, PID file, log and config"
)


@app.command()
def start(
    foreground: bool = typer.Option(False, "--foreground", "-f", help="Run in the foreground"),
    service_dir: Optional[Path] = ServiceDirOption,
) -> None:
    """
    Start the daemon (in the background unless --foreground is given).

    Example: ghrelay start
    """
    client = _client(service_dir)
    if client.is_daemon_running():
        typer.echo(f"Daemon already running on {client.socket_path}")
        return

    if foreground:
        # Heavy imports only when actually serving
        from ghrelay.daemon.server import run_daemon
        run_daemon(service_dir=str(_service_dir(service_dir)), daemonize=False)
        return

    if not client.start_daemon(service_dir=_service_dir(service_dir)):
        log_path = _service_dir(service_dir) / "daemon.log"
        typer.echo(f"Daemon did not come up; see {log_path}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Daemon started on {client.socket_path}")


@app.command()
def stop(
    service_dir: Optional[Path] = ServiceDirOption,
) -> None:
    """
    Stop the daemon, letting in-flight calls finish.

    Falls back to SIGTERM via the PID file if the socket does not answer.
    """
    client = _client(service_dir)
    if client.shutdown():
        # Wait for the socket to go away
        for _ in range(50):
            if not client.socket_path.exists():
                break
            time.sleep(0.1)
        typer.echo("Daemon stopped")
        return

    if stop_by_pid(_service_dir(service_dir) / "daemon.pid"):
        typer.echo("Sent SIGTERM to daemon")
        return

    typer.echo("Daemon is not running", err=True)
    raise typer.Exit(1)


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print the raw health report"),
    service_dir: Optional[Path] = ServiceDirOption,
) -> None:
    """
    Show daemon state, rate budgets and cache stats.

    Exits 1 if the daemon is not running.
    """
    stats = _client(service_dir).health()
    if stats is None:
        typer.echo("Daemon is not running", err=True)
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(stats, indent=2))
        return

    state = stats.get("state", "unknown")
    if stats.get("degraded"):
        state = f"{state} (degraded: {stats.get('degraded_reason')})"
    typer.echo(f"State:     {state}")
    typer.echo(f"Version:   {stats.get('version')}")
    typer.echo(f"Uptime:    {stats.get('uptime_seconds', 0):.0f}s")
    typer.echo(f"In flight: {stats.get('inflight', 0)}")
    for category, budget in (stats.get("budgets") or {}).items():
        typer.echo(
            f"Budget {category}: {budget.get('remaining')}/{budget.get('ceiling')}"
            f" (reset_at={budget.get('reset_at')})"
        )
    cache = stats.get("cache") or {}
    typer.echo(
        f"Cache:     {cache.get('entries', 0)} entries, "
        f"{cache.get('hits', 0)} hits, {cache.get('misses', 0)} misses"
    )


@app.command()
def call(
    method: str = typer.Argument(..., help="Method name, e.g. github.issues or graphql"),
    params: List[str] = typer.Argument(None, help="Parameters as key=value"),
    service_dir: Optional[Path] = ServiceDirOption,
) -> None:
    """
    Call a daemon method and print the JSON result.

    Example: ghrelay call github.issues repo=octocat/hello-world state=open
    """
    client = _client(service_dir)
    try:
        result = client.call(method, _parse_params(params or []))
    except RelayError as e:
        typer.echo(f"Error ({e.kind}): {e.message}", err=True)
        raise typer.Exit(1)
    except OSError as e:
        typer.echo(f"Daemon not reachable: {e}", err=True)
        typer.echo("Run 'ghrelay start' first", err=True)
        raise typer.Exit(1)

    typer.echo(json.dumps(result, indent=2))


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
