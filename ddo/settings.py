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


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DDO_DB_PATH", "ddo.db")
    max_workers: int = _env_int("DDO_MAX_WORKERS", 8)
    provider_concurrency: int = _env_int("DDO_PROVIDER_CONCURRENCY", 4)
    run_timeout_s: float = _env_float("DDO_RUN_TIMEOUT_S", 0.0)  # 0 disables

    # Retry policy for transient provider errors
    max_retries: int = _env_int("DDO_MAX_RETRIES", 3)
    backoff_base_s: float = _env_float("DDO_BACKOFF_BASE_S", 1.0)
    backoff_max_s: float = _env_float("DDO_BACKOFF_MAX_S", 30.0)

    # Provider transports
    http_timeout_s: float = _env_float("DDO_HTTP_TIMEOUT_S", 10.0)
    health_timeout_s: float = _env_float("DDO_HEALTH_TIMEOUT_S", 60.0)
    docker_network: str = os.getenv("DDO_DOCKER_NETWORK", "ddo")

    # Status API
    api_user: str = os.getenv("DDO_API_USER", "admin")
    api_password: str | None = os.getenv("DDO_API_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("DDO_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DDO_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DDO_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DDO_SMTP_USER")
    smtp_password: str | None = os.getenv("DDO_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DDO_EMAIL_FROM")
    email_to: str | None = os.getenv("DDO_EMAIL_TO")


settings = Settings()
