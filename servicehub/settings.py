from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


STORE_BACKENDS = ("sqlite", "memory")


@dataclass(frozen=True)
class DashboardSettings:
    # Record store: "sqlite" (persistent, single file) or "memory" (ephemeral, tests/demo).
    store_backend: str = "sqlite"
    db_path: str = "/data/servicehub.db"

    host: str = "0.0.0.0"
    port: int = 5000

    # Bearer token of the built-in administrator. Viewer tokens are issued via /api/users.
    admin_token: str = ""

    # Monitoring loop.
    monitor_enabled: bool = True
    poll_interval_seconds: int = 30
    probe_timeout_seconds: float = 5.0
    probe_concurrency: int = 16
    # How long shutdown waits for an in-flight cycle before closing the HTTP client.
    shutdown_grace_seconds: float = 10.0
    user_agent: str = "ServiceHub Monitor"

    seed_default_categories: bool = True

    log_level: str = "INFO"
    log_json: bool = False
    request_log_enabled: bool = True

    def __post_init__(self) -> None:
        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(f"Unsupported store_backend={self.store_backend!r} (expected one of {STORE_BACKENDS})")
        if int(self.poll_interval_seconds) < 1:
            raise ValueError("poll_interval_seconds must be >= 1")
        if float(self.probe_timeout_seconds) <= 0:
            raise ValueError("probe_timeout_seconds must be > 0")
        if int(self.probe_concurrency) < 1:
            raise ValueError("probe_concurrency must be >= 1")


# field name -> (env var, reader)
_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "store_backend": ("SERVICEHUB_STORE", _env_str),
    "db_path": ("SERVICEHUB_DB_PATH", _env_str),
    "host": ("SERVICEHUB_HOST", _env_str),
    "port": ("SERVICEHUB_PORT", _env_int),
    "admin_token": ("SERVICEHUB_ADMIN_TOKEN", _env_str),
    "monitor_enabled": ("SERVICEHUB_MONITOR_ENABLED", _env_bool),
    "poll_interval_seconds": ("SERVICEHUB_POLL_INTERVAL_SECONDS", _env_int),
    "probe_timeout_seconds": ("SERVICEHUB_PROBE_TIMEOUT_SECONDS", _env_float),
    "probe_concurrency": ("SERVICEHUB_PROBE_CONCURRENCY", _env_int),
    "shutdown_grace_seconds": ("SERVICEHUB_SHUTDOWN_GRACE_SECONDS", _env_float),
    "user_agent": ("SERVICEHUB_USER_AGENT", _env_str),
    "seed_default_categories": ("SERVICEHUB_SEED_CATEGORIES", _env_bool),
    "log_level": ("LOG_LEVEL", _env_str),
    "log_json": ("SERVICEHUB_LOG_JSON", _env_bool),
    "request_log_enabled": ("SERVICEHUB_REQUEST_LOG", _env_bool),
}


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def load_settings(config_path: str | None = None) -> DashboardSettings:
    """
    Build settings from defaults, then the optional YAML file, then environment variables.
    Unknown YAML keys are ignored.
    """
    if config_path is None:
        config_path = os.getenv("SERVICEHUB_CONFIG", "")
    known = {f.name: f for f in fields(DashboardSettings)}

    data: dict[str, Any] = {}
    if config_path:
        raw = _load_yaml(Path(config_path))
        data.update({k: v for k, v in raw.items() if k in known})

    for name, (env_name, reader) in _ENV_OVERRIDES.items():
        if os.getenv(env_name) is None:
            continue
        current = data.get(name, known[name].default)
        data[name] = reader(env_name, current)

    return DashboardSettings(**data)
