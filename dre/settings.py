from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DRE_DB_PATH", "dre.db")
    poll_interval_s: int = _env_int("DRE_POLL_INTERVAL_S", 5)
    docker_network: str = os.getenv("DRE_DOCKER_NETWORK", "dre")
    gateway_timeout_s: int = _env_int("DRE_GATEWAY_TIMEOUT_S", 10)

    # Probing / rollouts
    probe_tick_s: int = _env_int("DRE_PROBE_TICK_S", 1)
    probe_workers: int = _env_int("DRE_PROBE_WORKERS", 8)
    rollout_workers: int = _env_int("DRE_ROLLOUT_WORKERS", 4)
    stall_threshold_s: int = _env_int("DRE_STALL_THRESHOLD_S", 300)
    # Abort the whole pass (instead of only the affected workloads) on a config collision.
    strict_config: bool = _env_bool("DRE_STRICT_CONFIG", False)

    # Storage / exposure
    volume_mount_path: str = os.getenv("DRE_VOLUME_MOUNT_PATH", "/data")
    node_port_min: int = _env_int("DRE_NODE_PORT_MIN", 30000)
    node_port_max: int = _env_int("DRE_NODE_PORT_MAX", 32767)
    # Bind a listener on each published external port.
    serve_external: bool = _env_bool("DRE_SERVE_EXTERNAL", True)
    ingress_host: str = os.getenv("DRE_INGRESS_HOST", "0.0.0.0")

    # Email alerting (optional)
    enable_email: bool = _env_bool("DRE_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DRE_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DRE_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DRE_SMTP_USER")
    smtp_password: str | None = os.getenv("DRE_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DRE_EMAIL_FROM")
    email_to: str | None = os.getenv("DRE_EMAIL_TO")


settings = Settings()
