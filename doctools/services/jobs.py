"""Submission and status boundary for document-tool jobs."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from doctools.core.errors import JobForbiddenError, JobGoneError, JobNotFoundError, ValidationFailedError
from doctools.core.security import CurrentUser
from doctools.jobs.models import JobItemRecord, JobRecord, utc_now
from doctools.jobs.registry import ModuleRegistry
from doctools.services.history import HISTORY_RETENTION_HOURS, HistoryEntry, fetch_recent, record_job_start
from doctools.services.quotas import check_quota
from doctools.storage.artifacts import ArtifactStore
from doctools.storage.jobs_repo import JobsRepository, JobsRepositoryFactory
from doctools.utils.ids import generate_job_id, is_uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobStatusView:
  job: JobRecord
  items: list[JobItemRecord]


@asynccontextmanager
async def _admission_transaction(session: AsyncSession):
  """Quota check, job rows, and history entry commit together or not at all."""
  if session.in_transaction():
    async with session.begin_nested():
      yield
    await session.commit()
    return
  async with session.begin():
    yield


async def submit_job(session: AsyncSession, *, registry: ModuleRegistry, repo_factory: JobsRepositoryFactory, user: CurrentUser, module_key: str, payload: dict[str, Any]) -> JobRecord:
  """Admit a submission and persist it as a pending job.

  Raises QuotaExceededError or ValidationFailedError; nothing is stored on
  rejection. The caller dispatches the job after this returns.
  """
  handler = registry.resolve(module_key)
  normalized = handler.validate_payload(payload)
  job_id = generate_job_id()
  items = handler.build_items(job_id, normalized)
  if not items:
    raise ValidationFailedError("Submission produced no work items")

  policy = handler.policy
  projected_units = policy.units_per_item * len(items) + policy.units_per_job
  projected_tokens = handler.estimate_tokens(normalized)
  now = utc_now()
  job = JobRecord(job_id=job_id, user_id=str(user.id), module_key=module_key, status="pending", payload=normalized, created_at=now, updated_at=now, status_detail="Queued")

  repo = repo_factory(module_key)
  async with _admission_transaction(session):
    await check_quota(session, user_id=user.id, module_key=module_key, projected_units=projected_units, projected_tokens=projected_tokens)
    await repo.create_job(job, items, session=session)
    await record_job_start(session, user_id=user.id, module=module_key, job_key=job_id)

  logger.info("Job admitted module=%s job_id=%s user=%s items=%d projected_units=%d projected_tokens=%d", module_key, job_id, user.id, len(items), projected_units, projected_tokens)
  return job


async def _load_visible_job(repo: JobsRepository, job_id: str, requester: CurrentUser) -> JobRecord:
  if not is_uuid(job_id):
    raise JobNotFoundError(job_id)
  job = await repo.get_job(job_id)
  if job is None:
    raise JobNotFoundError(job_id)
  if job.user_id != str(requester.id) and not requester.is_admin:
    raise JobForbiddenError(job_id)
  return job


async def get_status(*, repo: JobsRepository, job_id: str, requester: CurrentUser) -> JobStatusView:
  """Return a job and its items; owners and admins only."""
  job = await _load_visible_job(repo, job_id, requester)
  items = await repo.list_items(job_id)
  return JobStatusView(job=job, items=items)


async def resolve_download(*, repo: JobsRepository, artifacts: ArtifactStore, job_id: str, requester: CurrentUser, round_number: int | None = None, ordinal: int | None = None) -> Path:
  """Resolve the aggregate artifact, or one item's artifact when a slot is given."""
  job = await _load_visible_job(repo, job_id, requester)
  if job.files_purged:
    raise JobGoneError(job_id)
  if round_number is None or ordinal is None:
    if job.status != "completed" or not job.result_path:
      raise JobNotFoundError(f"{job_id} has no downloadable result")
    path = job.result_path
  else:
    items = await repo.list_items(job_id, round_number=round_number)
    item = next((candidate for candidate in items if candidate.ordinal == ordinal), None)
    if item is None or not item.output_path:
      raise JobNotFoundError(f"{job_id} item {round_number}.{ordinal} has no output")
    path = item.output_path
  if not artifacts.is_within_root(path):
    logger.warning("Download refused outside storage root module=%s job_id=%s path=%s", job.module_key, job_id, path)
    raise JobNotFoundError(f"{job_id} artifact missing on disk")
  resolved = Path(path)
  if not resolved.is_file():
    raise JobNotFoundError(f"{job_id} artifact missing on disk")
  return resolved


async def list_history(session: AsyncSession, *, registry: ModuleRegistry, user: CurrentUser, module: str | None = None, limit: int | None = 20, retention_hours: int = HISTORY_RETENTION_HOURS) -> list[HistoryEntry]:
  """Recent jobs for the caller, optionally restricted to one module."""
  if module is not None:
    registry.resolve(module)
  return await fetch_recent(session, user_id=uuid.UUID(str(user.id)), module=module, limit=limit, retention_hours=retention_hours)
