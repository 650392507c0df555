"""Postgres-backed repository for document-tool jobs using SQLAlchemy."""

from __future__ import annotations

import datetime
import logging

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.core.database import get_session_factory
from doctools.core.errors import InvalidTransitionError
from doctools.jobs.models import TERMINAL_STATUSES, JobItemRecord, JobRecord, JobStatus, transition, utc_now
from doctools.schema.jobs import JobColumnsMixin, JobItemColumnsMixin, job_tables_for
from doctools.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class PostgresJobsRepository(JobsRepository):
  """Persist one module's jobs and items to its `<module>_jobs` tables."""

  def __init__(self, module_key: str) -> None:
    self.module_key = module_key
    self._job_model, self._item_model = job_tables_for(module_key)
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  def _job_row(self, job: JobRecord) -> JobColumnsMixin:
    return self._job_model(
      id=job.job_id,
      user_id=job.user_id,
      module_key=job.module_key,
      status=job.status,
      status_detail=job.status_detail,
      error_message=job.error_message,
      usage_delta=job.usage_delta,
      total_tokens=job.total_tokens,
      payload=job.payload,
      result=job.result,
      result_path=job.result_path,
      created_at=job.created_at,
      updated_at=job.updated_at,
    )

  def _item_row(self, item: JobItemRecord) -> JobItemColumnsMixin:
    return self._item_model(job_id=item.job_id, round=item.round, ordinal=item.ordinal, label=item.label, status=item.status, status_detail=item.status_detail, input=item.input)

  async def create_job(self, job: JobRecord, items: list[JobItemRecord], *, session: AsyncSession | None = None) -> None:
    if session is not None:
      session.add(self._job_row(job))
      # Flush the parent first so item foreign keys resolve inside the caller's transaction.
      await session.flush()
      session.add_all([self._item_row(item) for item in items])
      await session.flush()
      return
    async with self._session_factory() as own_session:
      own_session.add(self._job_row(job))
      await own_session.flush()
      own_session.add_all([self._item_row(item) for item in items])
      await own_session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(self._job_model, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def list_items(self, job_id: str, *, round_number: int | None = None) -> list[JobItemRecord]:
    model = self._item_model
    stmt = select(model).where(model.job_id == job_id)
    if round_number is not None:
      stmt = stmt.where(model.round == round_number)
    stmt = stmt.order_by(model.round.asc(), model.ordinal.asc())
    async with self._session_factory() as session:
      rows = (await session.execute(stmt)).scalars().all()
      return [self._item_to_record(row) for row in rows]

  async def add_items(self, items: list[JobItemRecord]) -> None:
    if not items:
      return
    async with self._session_factory() as session:
      session.add_all([self._item_row(item) for item in items])
      await session.commit()

  async def claim_job(self, job_id: str) -> JobRecord | None:
    model = self._job_model
    now = utc_now()
    stmt = update(model).where(model.id == job_id, model.status == "pending").values(status="processing", status_detail="Processing started", updated_at=now).returning(model)
    async with self._session_factory() as session:
      row = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_progress(self, job_id: str, status_detail: str) -> bool:
    model = self._job_model
    stmt = update(model).where(model.id == job_id, model.status.in_(("pending", "processing"))).values(status_detail=status_detail, updated_at=utc_now())
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      await session.commit()
      return bool(result.rowcount)

  def _item_filter(self, job_id: str, round_number: int, ordinal: int):  # type: ignore[no-untyped-def]
    model = self._item_model
    return and_(model.job_id == job_id, model.round == round_number, model.ordinal == ordinal)

  async def start_item(self, job_id: str, round_number: int, ordinal: int, *, status_detail: str | None = None) -> None:
    model = self._item_model
    stmt = update(model).where(self._item_filter(job_id, round_number, ordinal), model.status == "pending").values(status="processing", status_detail=status_detail, updated_at=utc_now())
    async with self._session_factory() as session:
      await session.execute(stmt)
      await session.commit()

  async def record_item_attempt(self, job_id: str, round_number: int, ordinal: int, *, attempt_count: int, error_message: str) -> None:
    model = self._item_model
    stmt = update(model).where(self._item_filter(job_id, round_number, ordinal), model.status == "processing").values(attempt_count=attempt_count, error_message=error_message, status_detail=f"Attempt {attempt_count} failed", updated_at=utc_now())
    async with self._session_factory() as session:
      await session.execute(stmt)
      await session.commit()

  async def finish_item(
    self,
    job_id: str,
    round_number: int,
    ordinal: int,
    *,
    status: JobStatus,
    attempt_count: int,
    status_detail: str | None = None,
    error_message: str | None = None,
    output_text: str | None = None,
    output_path: str | None = None,
    tokens_used: int = 0,
  ) -> None:
    model = self._item_model
    values = {"status": status, "attempt_count": attempt_count, "status_detail": status_detail, "output_text": output_text, "output_path": output_path, "tokens_used": max(int(tokens_used), 0), "updated_at": utc_now()}
    # Failed items keep the last error; successful items keep whatever an earlier attempt recorded.
    if error_message is not None:
      values["error_message"] = error_message
    stmt = update(model).where(self._item_filter(job_id, round_number, ordinal), model.status.notin_(tuple(TERMINAL_STATUSES))).values(**values)
    async with self._session_factory() as session:
      await session.execute(stmt)
      await session.commit()

  async def add_usage(self, job_id: str, *, units: int, tokens: int) -> None:
    units = max(int(units), 0)
    tokens = max(int(tokens), 0)
    if units == 0 and tokens == 0:
      return
    model = self._job_model
    stmt = update(model).where(model.id == job_id).values(usage_delta=model.usage_delta + units, total_tokens=model.total_tokens + tokens, updated_at=utc_now())
    async with self._session_factory() as session:
      await session.execute(stmt)
      await session.commit()

  async def finish_job(self, job_id: str, *, status: JobStatus, status_detail: str, error_message: str | None = None, result: dict | None = None, result_path: str | None = None) -> bool:
    model = self._job_model
    async with self._session_factory() as session:
      current = (await session.execute(select(model.status).where(model.id == job_id).with_for_update())).scalar_one_or_none()
      if current is None:
        logger.warning("Terminal transition skipped module=%s job_id=%s reason=missing", self.module_key, job_id)
        return False
      try:
        target = transition(current, status)
      except InvalidTransitionError:
        logger.warning("Terminal transition skipped module=%s job_id=%s current=%s target=%s", self.module_key, job_id, current, status)
        await session.rollback()
        return False
      now = utc_now()
      stmt = (
        update(model)
        .where(model.id == job_id, model.status == current)
        .values(status=target, status_detail=status_detail, error_message=error_message, result=result, result_path=result_path, updated_at=now, completed_at=now)
      )
      outcome = await session.execute(stmt)
      await session.commit()
      return bool(outcome.rowcount)

  async def find_by_status(self, status: JobStatus, *, limit: int = 100) -> list[JobRecord]:
    model = self._job_model
    stmt = select(model).where(model.status == status).order_by(model.created_at.asc()).limit(limit)
    async with self._session_factory() as session:
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def find_purgeable(self, cutoff: datetime.datetime, *, limit: int = 100) -> list[JobRecord]:
    model = self._job_model
    stmt = select(model).where(model.status.in_(tuple(TERMINAL_STATUSES)), model.files_purged_at.is_(None), model.created_at < cutoff).order_by(model.created_at.asc()).limit(limit)
    async with self._session_factory() as session:
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def mark_purged(self, job_id: str, purged_at: datetime.datetime) -> bool:
    job_model = self._job_model
    item_model = self._item_model
    job_stmt = update(job_model).where(job_model.id == job_id, job_model.files_purged_at.is_(None), job_model.status.in_(tuple(TERMINAL_STATUSES))).values(result_path=None, files_purged_at=purged_at, updated_at=purged_at)
    item_stmt = update(item_model).where(item_model.job_id == job_id).values(output_path=None)
    async with self._session_factory() as session:
      async with session.begin():
        outcome = await session.execute(job_stmt)
        if not outcome.rowcount:
          return False
        await session.execute(item_stmt)
      return True

  def _model_to_record(self, row: JobColumnsMixin) -> JobRecord:
    return JobRecord(
      job_id=row.id,
      user_id=row.user_id,
      module_key=row.module_key,
      status=row.status,  # type: ignore[arg-type]
      payload=dict(row.payload or {}),
      created_at=row.created_at,
      updated_at=row.updated_at,
      status_detail=row.status_detail,
      error_message=row.error_message,
      usage_delta=int(row.usage_delta or 0),
      total_tokens=int(row.total_tokens or 0),
      result=row.result,
      result_path=row.result_path,
      files_purged_at=row.files_purged_at,
      completed_at=row.completed_at,
    )

  def _item_to_record(self, row: JobItemColumnsMixin) -> JobItemRecord:
    return JobItemRecord(
      job_id=row.job_id,
      round=row.round,
      ordinal=row.ordinal,
      label=row.label,
      status=row.status,  # type: ignore[arg-type]
      input=dict(row.input or {}),
      status_detail=row.status_detail,
      attempt_count=int(row.attempt_count or 0),
      error_message=row.error_message,
      output_text=row.output_text,
      output_path=row.output_path,
      tokens_used=int(row.tokens_used or 0),
    )


def postgres_repo_factory(module_key: str) -> PostgresJobsRepository:
  return PostgresJobsRepository(module_key)
