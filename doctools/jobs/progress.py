"""Job progress tracking utilities."""

from __future__ import annotations

import logging

from doctools.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class JobProgressTracker:
  """Persist human-readable sub-step detail for an in-flight job."""

  def __init__(self, *, job_id: str, jobs_repo: JobsRepository) -> None:
    self.job_id = job_id
    self._jobs_repo = jobs_repo
    self._last_detail: str | None = None

  @property
  def last_detail(self) -> str | None:
    return self._last_detail

  async def set_detail(self, detail: str) -> None:
    """Overwrite status_detail; repeated identical details are not rewritten."""
    if detail == self._last_detail:
      return
    self._last_detail = detail
    updated = await self._jobs_repo.update_progress(self.job_id, detail)
    if not updated:
      logger.debug("Progress update ignored for job %s (no longer in flight)", self.job_id)

  async def round_started(self, round_number: int, item_count: int) -> None:
    await self.set_detail(f"Round {round_number}: processing {item_count} item(s)")

  async def item_finished(self, round_number: int, done: int, total: int) -> None:
    await self.set_detail(f"Round {round_number}: {done}/{total} item(s) finished")
