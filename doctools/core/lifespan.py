from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import urlparse

from fastapi import FastAPI

from doctools.ai.client import build_llm_client
from doctools.config import Settings
from doctools.core.database import dispose_engine, get_session_factory
from doctools.core.logging import initialize_logging
from doctools.jobs.dispatch import JobDispatcher, recover_orphaned_jobs
from doctools.jobs.registry import ModuleRegistry, build_default_registry
from doctools.jobs.worker import JobWorker
from doctools.services.maintenance import RetentionSweeper, make_history_purger, sweep_expired_jobs
from doctools.services.module_configs import make_settings_loader
from doctools.services.usage import make_usage_recorder
from doctools.storage.artifacts import ArtifactStore
from doctools.storage.jobs_repo import JobsRepositoryFactory
from doctools.storage.postgres_jobs_repo import postgres_repo_factory


@dataclass
class Runtime:
  """Process-wide collaborators built once at startup and stored on `app.state`."""

  registry: ModuleRegistry
  repo_factory: JobsRepositoryFactory
  artifacts: ArtifactStore
  dispatcher: JobDispatcher
  sweeper: RetentionSweeper | None = None


def build_runtime(settings: Settings, *, registry: ModuleRegistry | None = None) -> Runtime:
  registry = registry or build_default_registry()
  artifacts = ArtifactStore(settings.storage_root)
  session_factory = get_session_factory()
  if session_factory is None:
    raise RuntimeError("DOCTOOLS_PG_DSN is not set; the job engine needs a database")

  worker = JobWorker(
    registry=registry,
    repo_factory=postgres_repo_factory,
    llm=build_llm_client(settings),
    artifacts=artifacts,
    usage_recorder=make_usage_recorder(session_factory),
    settings_loader=make_settings_loader(session_factory),
  )
  dispatcher = JobDispatcher(worker)

  sweeper = None
  if settings.sweeper_enabled:
    history_purger = make_history_purger(session_factory)

    async def _sweep():  # type: ignore[no-untyped-def]
      return await sweep_expired_jobs(module_keys=registry.keys(), repo_factory=postgres_repo_factory, artifacts=artifacts, retention_hours=settings.retention_hours, history_purger=history_purger)

    sweeper = RetentionSweeper(_sweep, interval_seconds=settings.sweep_interval_seconds)
  return Runtime(registry=registry, repo_factory=postgres_repo_factory, artifacts=artifacts, dispatcher=dispatcher, sweeper=sweeper)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Build the job engine, recover interrupted work, and run the retention sweeper."""
  from doctools.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("doctools.core.lifespan")
  initialize_logging(settings)
  logger.info("Starting doctools engine environment=%s dsn=%s", settings.environment, _redact_dsn(settings.pg_dsn))

  runtime = build_runtime(settings)
  app.state.runtime = runtime
  try:
    counts = await recover_orphaned_jobs(dispatcher=runtime.dispatcher, registry=runtime.registry, repo_factory=runtime.repo_factory)
    logger.info("Startup recovery redispatched=%d failed=%d", counts.get("redispatched", 0), counts.get("failed", 0))
  except Exception:  # noqa: BLE001
    logger.error("Startup recovery failed; pending jobs will wait for the next restart.", exc_info=True)

  if runtime.sweeper is not None:
    runtime.sweeper.start()

  try:
    yield
  finally:
    if runtime.sweeper is not None:
      await runtime.sweeper.stop()
    await runtime.dispatcher.shutdown()
    await dispose_engine()
    logger.info("Shutdown complete")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"
  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"
  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
