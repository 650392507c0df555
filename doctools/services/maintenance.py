"""Maintenance services: retention sweeps of aged job outputs and history rows."""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from doctools.core.errors import StorageError
from doctools.storage.artifacts import ArtifactStore
from doctools.storage.jobs_repo import JobsRepositoryFactory

logger = logging.getLogger(__name__)

HistoryPurger = Callable[[datetime.datetime], Awaitable[int]]


@dataclass
class SweepReport:
  purged: int = 0
  skipped: int = 0
  history_removed: int = 0
  purged_job_ids: list[str] = field(default_factory=list)


async def sweep_expired_jobs(
  *,
  module_keys: list[str],
  repo_factory: JobsRepositoryFactory,
  artifacts: ArtifactStore,
  retention_hours: int,
  history_purger: HistoryPurger | None = None,
  now: datetime.datetime | None = None,
  batch_size: int = 200,
) -> SweepReport:
  """Purge outputs of terminal jobs older than the retention window.

  Selection filters on `files_purged_at IS NULL`, so re-running is a no-op for
  jobs already handled. A job whose directory cannot be removed is left for the
  next cycle.
  """
  current = now or datetime.datetime.now(datetime.UTC)
  cutoff = current - datetime.timedelta(hours=retention_hours)
  report = SweepReport()
  for module_key in module_keys:
    repo = repo_factory(module_key)
    for job in await repo.find_purgeable(cutoff, limit=batch_size):
      try:
        await artifacts.remove_job_dir(module_key, job.job_id)
      except StorageError as exc:
        logger.error("Failed to remove artifacts module=%s job_id=%s error=%s", module_key, job.job_id, exc)
        report.skipped += 1
        continue
      if await repo.mark_purged(job.job_id, current):
        report.purged += 1
        report.purged_job_ids.append(job.job_id)
  if history_purger is not None:
    report.history_removed = await history_purger(cutoff)
  if report.purged or report.skipped or report.history_removed:
    logger.info("Retention sweep purged=%d skipped=%d history_removed=%d", report.purged, report.skipped, report.history_removed)
  return report


def make_history_purger(session_factory) -> HistoryPurger:  # type: ignore[no-untyped-def]
  from doctools.services.history import purge_stale_history

  async def _purge(cutoff: datetime.datetime) -> int:
    async with session_factory() as session:
      removed = await purge_stale_history(session, cutoff=cutoff)
      await session.commit()
      return removed

  return _purge


class RetentionSweeper:
  """Background loop running `sweep_expired_jobs` on a fixed interval."""

  def __init__(self, sweep: Callable[[], Awaitable[SweepReport]], *, interval_seconds: float) -> None:
    self._sweep = sweep
    self._interval_seconds = interval_seconds
    self._task: asyncio.Task | None = None

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  async def run_once(self) -> SweepReport | None:
    """Run one cycle; failures are logged and never stop the loop."""
    try:
      return await self._sweep()
    except Exception:  # noqa: BLE001
      logger.error("Retention sweep cycle failed", exc_info=True)
      return None

  async def _loop(self) -> None:
    while True:
      await self.run_once()
      await asyncio.sleep(self._interval_seconds)

  def start(self) -> None:
    if self.running:
      return
    self._task = asyncio.create_task(self._loop(), name="retention-sweeper")
    logger.info("Retention sweeper started interval=%ss", self._interval_seconds)

  async def stop(self) -> None:
    if self._task is None:
      return
    self._task.cancel()
    try:
      await self._task
    except asyncio.CancelledError:
      pass
    self._task = None
    logger.info("Retention sweeper stopped")
