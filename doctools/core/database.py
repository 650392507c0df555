"""Async engine, session factory, and the request-scoped session dependency."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from doctools.config import get_database_settings

logger = logging.getLogger(__name__)

_ASYNC_SCHEMES = {"postgres": "postgresql+asyncpg", "postgresql": "postgresql+asyncpg", "postgresql+psycopg": "postgresql+asyncpg"}


class Base(DeclarativeBase):
  pass


def to_async_url(dsn: str) -> str:
  """Rewrite a plain Postgres DSN to use the asyncpg driver."""
  scheme, separator, rest = dsn.partition("://")
  if not separator:
    return dsn
  return f"{_ASYNC_SCHEMES.get(scheme, scheme)}://{rest}"


def _database_url() -> str | None:
  dsn = get_database_settings().pg_dsn
  return to_async_url(dsn) if dsn else None


@lru_cache(maxsize=1)
def get_db_engine() -> AsyncEngine | None:
  """Create the process-wide engine, or None when no DSN is configured."""
  settings = get_database_settings()
  database_url = _database_url()
  if database_url is None:
    return None
  # Workers, the sweeper, and request handlers share one pool.
  return create_async_engine(database_url, echo=settings.debug, pool_pre_ping=True, connect_args={"timeout": settings.pg_connect_timeout})


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  engine = get_db_engine()
  if engine is None:
    return None
  return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def dispose_engine() -> None:
  """Close pooled connections; the next use builds a fresh engine."""
  engine = get_db_engine()
  if engine is None:
    return
  await engine.dispose()
  get_session_factory.cache_clear()
  get_db_engine.cache_clear()
  logger.info("Database engine disposed")


async def get_db() -> AsyncGenerator[AsyncSession]:
  """Yield a session per request."""
  session_factory = get_session_factory()
  if session_factory is None:
    raise RuntimeError("Database connection is not configured (DOCTOOLS_PG_DSN is missing).")

  async with session_factory() as session:
    yield session
