"""History index: per-user list of recent jobs across modules."""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.schema.history import UserJobHistory
from doctools.schema.jobs import job_tables_for

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
HISTORY_RETENTION_HOURS = 24


@dataclass(frozen=True)
class HistoryEntry:
  """One history row, hydrated from its module's job table when possible."""

  module: str
  job_key: str
  created_at: datetime.datetime
  status: str | None = None
  status_detail: str | None = None
  updated_at: datetime.datetime | None = None
  files_purged: bool = False


def clamp_limit(limit: int | None, *, default: int = 20) -> int:
  """Bound a requested page size to 1..HISTORY_LIMIT."""
  if limit is None:
    return default
  return max(1, min(int(limit), HISTORY_LIMIT))


async def record_job_start(session: AsyncSession, *, user_id: uuid.UUID, module: str, job_key: str, keep: int = HISTORY_LIMIT) -> None:
  """Insert a history entry (idempotent per module/job) and prune beyond `keep`.

  Runs inside the caller's transaction.
  """
  stmt = pg_insert(UserJobHistory).values(user_id=user_id, module=module, job_key=job_key).on_conflict_do_nothing(index_elements=["module", "job_key"])
  await session.execute(stmt)

  # Keep only the newest `keep` rows for this user and module.
  newest = select(UserJobHistory.id).where(UserJobHistory.user_id == user_id, UserJobHistory.module == module).order_by(UserJobHistory.created_at.desc(), UserJobHistory.id.desc()).limit(keep)
  prune = delete(UserJobHistory).where(UserJobHistory.user_id == user_id, UserJobHistory.module == module, UserJobHistory.id.notin_(newest.scalar_subquery()))
  await session.execute(prune)


async def _hydrate(session: AsyncSession, entry: HistoryEntry) -> HistoryEntry:
  try:
    job_model, _ = job_tables_for(entry.module)
  except KeyError:
    logger.warning("Unknown module in history table module=%s job_key=%s", entry.module, entry.job_key)
    return entry
  stmt = select(job_model.status, job_model.status_detail, job_model.updated_at, job_model.files_purged_at).where(job_model.id == entry.job_key)
  row = (await session.execute(stmt)).one_or_none()
  if row is None:
    logger.warning("History entry references a missing job module=%s job_key=%s", entry.module, entry.job_key)
    return entry
  status, status_detail, updated_at, files_purged_at = row
  return HistoryEntry(module=entry.module, job_key=entry.job_key, created_at=entry.created_at, status=status, status_detail=status_detail, updated_at=updated_at, files_purged=files_purged_at is not None)


async def fetch_recent(
  session: AsyncSession,
  *,
  user_id: uuid.UUID,
  module: str | None = None,
  limit: int | None = 20,
  retention_hours: int = HISTORY_RETENTION_HOURS,
  now: datetime.datetime | None = None,
) -> list[HistoryEntry]:
  """Newest-first history within the retention window, hydrated with live job state."""
  current = now or datetime.datetime.now(datetime.UTC)
  cutoff = current - datetime.timedelta(hours=retention_hours)
  stmt = select(UserJobHistory.module, UserJobHistory.job_key, UserJobHistory.created_at).where(UserJobHistory.user_id == user_id, UserJobHistory.created_at >= cutoff)
  if module:
    stmt = stmt.where(UserJobHistory.module == module)
  stmt = stmt.order_by(UserJobHistory.created_at.desc(), UserJobHistory.id.desc()).limit(clamp_limit(limit))
  rows = (await session.execute(stmt)).all()
  entries: list[HistoryEntry] = []
  for row_module, job_key, created_at in rows:
    entries.append(await _hydrate(session, HistoryEntry(module=row_module, job_key=job_key, created_at=created_at)))
  return entries


async def purge_stale_history(session: AsyncSession, *, cutoff: datetime.datetime) -> int:
  """Delete history rows created before `cutoff`; returns the number removed."""
  result = await session.execute(delete(UserJobHistory).where(UserJobHistory.created_at < cutoff))
  return int(result.rowcount or 0)
