"""Configuration management for ghrelay.

Loads daemon settings from <service_dir>/config.cfg, applies GHRELAY_*
environment overrides and resolves the GitHub token.
"""

import configparser
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import dotenv_values

# Default service directory (socket, pid file, log, config).
SERVICE_DIR = Path.home() / ".ghrelay" / "services" / "github"

GRAPHQL_URL = "https://api.github.com/graphql"
REST_URL = "https://api.github.com"


@dataclass
class DaemonConfig:
    service_dir: Path
    graphql_url: str = GRAPHQL_URL
    rest_url: str = REST_URL
    call_timeout: float = 30.0
    request_timeout: float = 120.0
    cache_ttl: float = 60.0
    cache_max_entries: int = 1024
    reserve_threshold: int = 1
    retry_attempts: int = 4
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    graphql_ceiling: int = 5000
    rest_ceiling: int = 5000
    shutdown_timeout: float = 30.0
    idle_timeout: float = 0.0
    max_line_bytes: int = 1024 * 1024

    @property
    def socket_path(self) -> Path:
        return self.service_dir / "daemon.sock"

    @property
    def pid_path(self) -> Path:
        return self.service_dir / "daemon.pid"

    @property
    def log_path(self) -> Path:
        return self.service_dir / "daemon.log"


def default_service_dir() -> Path:
    env = os.environ.get("GHRELAY_SERVICE_DIR", "").strip()
    return Path(env).expanduser() if env else SERVICE_DIR


def load_raw_config(path: Optional[Path] = None) -> Dict[str, str]:
    """
    Load configuration values from <service_dir>/config.cfg.
    Values are returned with lowercase keys for convenience.
    """
    path = path or default_service_dir() / "config.cfg"
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})

    return data


def _get_float(raw: Dict[str, str], key: str, default: float) -> float:
    env = os.environ.get(f"GHRELAY_{key.upper()}")
    value = env if env is not None and str(env).strip() != "" else raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for '{key}': {value!r}")
    if number < 0:
        raise ValueError(f"'{key}' must not be negative (got {number})")
    return number


def _get_int(raw: Dict[str, str], key: str, default: int) -> int:
    return int(_get_float(raw, key, default))


def get_daemon_config(
    raw: Optional[Dict[str, str]] = None,
    service_dir: Optional[Path] = None,
) -> DaemonConfig:
    """
    Build a DaemonConfig from raw configuration values.
    Raises ValueError if a value is malformed.
    """
    service_dir = Path(service_dir) if service_dir else default_service_dir()
    if raw is None:
        raw = load_raw_config(service_dir / "config.cfg")

    config = DaemonConfig(
        service_dir=service_dir,
        graphql_url=raw.get("graphql_url", GRAPHQL_URL).strip() or GRAPHQL_URL,
        rest_url=(raw.get("rest_url", REST_URL).strip() or REST_URL).rstrip("/"),
        call_timeout=_get_float(raw, "call_timeout", 30.0),
        request_timeout=_get_float(raw, "request_timeout", 120.0),
        cache_ttl=_get_float(raw, "cache_ttl", 60.0),
        cache_max_entries=_get_int(raw, "cache_max_entries", 1024),
        reserve_threshold=_get_int(raw, "reserve_threshold", 1),
        retry_attempts=_get_int(raw, "retry_attempts", 4),
        retry_base_delay=_get_float(raw, "retry_base_delay", 0.5),
        retry_max_delay=_get_float(raw, "retry_max_delay", 8.0),
        graphql_ceiling=_get_int(raw, "graphql_ceiling", 5000),
        rest_ceiling=_get_int(raw, "rest_ceiling", 5000),
        shutdown_timeout=_get_float(raw, "shutdown_timeout", 30.0),
        idle_timeout=_get_float(raw, "idle_timeout", 0.0),
        max_line_bytes=_get_int(raw, "max_line_bytes", 1024 * 1024),
    )
    if config.retry_attempts < 1:
        raise ValueError("'retry_attempts' must be at least 1")
    return config


def gh_hosts_path() -> Path:
    """Path of the gh CLI's hosts.yml, honouring XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "").strip()
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "gh" / "hosts.yml"


def read_gh_token(path: Optional[Path] = None) -> Optional[str]:
    """
    Read the github.com oauth_token stored by `gh auth login`.

    Returns None if the file or the token is missing. Raises ValueError if
    the file cannot be parsed.
    """
    path = path or gh_hosts_path()
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            hosts = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse gh config {path}: {e}")

    host = hosts.get("github.com") if isinstance(hosts, dict) else None
    token = host.get("oauth_token") if isinstance(host, dict) else None
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


def resolve_token(service_dir: Optional[Path] = None) -> str:
    """
    Resolve the GitHub token.

    Resolution order:
    1. GITHUB_TOKEN environment variable
    2. GH_TOKEN environment variable
    3. GITHUB_TOKEN / GH_TOKEN in <service_dir>/.env
    4. gh CLI config ($XDG_CONFIG_HOME or ~/.config, then gh/hosts.yml)
    """
    for name in ("GITHUB_TOKEN", "GH_TOKEN"):
        token = os.environ.get(name, "").strip()
        if token:
            return token

    env_path = (Path(service_dir) if service_dir else default_service_dir()) / ".env"
    if env_path.exists():
        values = dotenv_values(env_path)
        for name in ("GITHUB_TOKEN", "GH_TOKEN"):
            token = (values.get(name) or "").strip()
            if token:
                return token

    token = read_gh_token()
    if token:
        return token

    raise ValueError(
        "No GitHub token found. Set GITHUB_TOKEN, add it to "
        f"{env_path} or run 'gh auth login' (checked {gh_hosts_path()})."
    )
