"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from doctools.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the doctools service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  storage_root: str
  retention_hours: int
  sweep_interval_seconds: int
  sweeper_enabled: bool
  history_limit: int
  usage_window_days: int
  session_cookie_name: str
  openrouter_api_key: str | None
  openrouter_base_url: str
  openrouter_referer: str | None
  openrouter_title: str | None
  poe_api_key: str | None
  poe_base_url: str
  llm_timeout_seconds: float


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("DOCTOOLS_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("DOCTOOLS_ENV", "development").lower()
  debug = _parse_bool(os.getenv("DOCTOOLS_DEBUG"))

  log_backup_count = int(os.getenv("DOCTOOLS_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("DOCTOOLS_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Retention and sweep cadence drive the purge timer; both must stay positive.
  retention_hours = _positive_int("DOCTOOLS_RETENTION_HOURS", "24")
  sweep_interval_seconds = _positive_int("DOCTOOLS_SWEEP_INTERVAL_SECONDS", "3600")

  history_limit = _positive_int("DOCTOOLS_HISTORY_LIMIT", "50")
  usage_window_days = _positive_int("DOCTOOLS_USAGE_WINDOW_DAYS", "7")

  llm_timeout_seconds = float(os.getenv("DOCTOOLS_LLM_TIMEOUT_SECONDS", "300"))
  if llm_timeout_seconds <= 0:
    raise ValueError("DOCTOOLS_LLM_TIMEOUT_SECONDS must be positive.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("DOCTOOLS_ALLOWED_ORIGINS")),
    log_dir=os.getenv("DOCTOOLS_LOG_DIR", "./logs").strip(),
    log_max_bytes=_positive_int("DOCTOOLS_LOG_MAX_BYTES", "5242880"),
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("DOCTOOLS_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("DOCTOOLS_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("DOCTOOLS_PG_CONNECT_TIMEOUT", "5"),
    storage_root=os.getenv("DOCTOOLS_STORAGE_ROOT", "./storage").strip(),
    retention_hours=retention_hours,
    sweep_interval_seconds=sweep_interval_seconds,
    sweeper_enabled=_parse_bool(os.getenv("DOCTOOLS_SWEEPER_ENABLED"), default=True),
    history_limit=history_limit,
    usage_window_days=usage_window_days,
    session_cookie_name=os.getenv("DOCTOOLS_SESSION_COOKIE", "doctools_session"),
    openrouter_api_key=_optional_str(os.getenv("OPENROUTER_API_KEY")),
    openrouter_base_url=(os.getenv("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1").strip(),
    openrouter_referer=_optional_str(os.getenv("OPENROUTER_HTTP_REFERER")),
    openrouter_title=_optional_str(os.getenv("OPENROUTER_X_TITLE")),
    poe_api_key=_optional_str(os.getenv("POE_API_KEY")),
    poe_base_url=(os.getenv("POE_BASE_URL") or "https://api.poe.com/v1").strip(),
    llm_timeout_seconds=llm_timeout_seconds,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration."""
  # Keep database configuration isolated so migrations don't require unrelated env vars.
  debug = _parse_bool(os.getenv("DOCTOOLS_DEBUG"))
  pg_connect_timeout = _positive_int("DOCTOOLS_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = os.getenv("DOCTOOLS_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
