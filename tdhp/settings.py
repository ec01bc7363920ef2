from __future__ import annotations

import os
from dataclasses import dataclass
from urllib.parse import urlsplit


class ConfigError(ValueError):
    """Process configuration is unusable; the service must not start."""


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
    base_url: str | None = os.getenv("TDHP_BASE_URL") or os.getenv("BASE_URL")
    label_prefix: str = os.getenv("TDHP_LABEL_PREFIX", "traefik")
    exposed_by_default: bool = _env_bool("TDHP_EXPOSED_BY_DEFAULT", True)
    db_path: str = os.getenv("TDHP_DB_PATH", "tdhp.db")

    # Container source
    source: str = os.getenv("TDHP_SOURCE", "docker")  # docker|file
    fixture_path: str = os.getenv("TDHP_FIXTURE_PATH", "containers.json")
    docker_host: str | None = os.getenv("TDHP_DOCKER_HOST")
    docker_timeout_s: int = _env_int("TDHP_DOCKER_TIMEOUT_S", 10)
    source_timeout_s: int = _env_int("TDHP_SOURCE_TIMEOUT_S", 15)
    resync_interval_s: int = _env_int("TDHP_RESYNC_INTERVAL_S", 60)
    backoff_initial_s: int = _env_int("TDHP_BACKOFF_INITIAL_S", 1)
    backoff_max_s: int = _env_int("TDHP_BACKOFF_MAX_S", 30)

    # HTTP
    listen_host: str = os.getenv("TDHP_LISTEN_HOST", "0.0.0.0")
    listen_port: int = _env_int("TDHP_LISTEN_PORT", 8000)


def validate_base_url(raw: str | None) -> str:
    if raw is None or not raw.strip():
        raise ConfigError("Base URL is not configured. Set TDHP_BASE_URL (or BASE_URL).")
    url = raw.strip()
    parts = urlsplit(url)
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        raise ConfigError(f"Base URL must be an absolute http(s) URL with a host, got {url!r}.")
    try:
        parts.port
    except ValueError as e:
        raise ConfigError(f"Base URL has an invalid port: {url!r}.") from e
    return url


def validate_settings(s: Settings) -> None:
    """Fail fast on settings the service cannot run with."""
    validate_base_url(s.base_url)
    if not s.label_prefix or "." in s.label_prefix:
        raise ConfigError("TDHP_LABEL_PREFIX must be a single non-empty segment.")
    if s.source not in {"docker", "file"}:
        raise ConfigError(f"TDHP_SOURCE must be 'docker' or 'file', got {s.source!r}.")


settings = Settings()
