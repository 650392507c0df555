"""Storage interfaces for document-tool jobs."""

from __future__ import annotations

import datetime
from collections.abc import Callable
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from doctools.jobs.models import JobItemRecord, JobRecord, JobStatus


class JobsRepository(Protocol):
  """Repository contract for one module's job and item persistence.

  Every mutation is a single guarded statement so concurrent writers (the
  worker, the sweeper, startup recovery) cannot move a job backwards.
  """

  module_key: str

  async def create_job(self, job: JobRecord, items: list[JobItemRecord], *, session: AsyncSession | None = None) -> None:
    """Insert a pending job with its first-round items.

    When `session` is given the rows join the caller's transaction and are not committed here.
    """

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def list_items(self, job_id: str, *, round_number: int | None = None) -> list[JobItemRecord]:
    """Return a job's items ordered by (round, ordinal)."""

  async def add_items(self, items: list[JobItemRecord]) -> None:
    """Insert items for a later round of an in-flight job."""

  async def claim_job(self, job_id: str) -> JobRecord | None:
    """Atomically move a job from pending to processing; None when not claimable."""

  async def update_progress(self, job_id: str, status_detail: str) -> bool:
    """Overwrite status_detail of an in-flight job."""

  async def start_item(self, job_id: str, round_number: int, ordinal: int, *, status_detail: str | None = None) -> None:
    """Mark an item as processing."""

  async def record_item_attempt(self, job_id: str, round_number: int, ordinal: int, *, attempt_count: int, error_message: str) -> None:
    """Persist a failed attempt while retries continue."""

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
    """Record an item's terminal state."""

  async def add_usage(self, job_id: str, *, units: int, tokens: int) -> None:
    """Increment usage_delta and total_tokens; negative values are ignored."""

  async def finish_job(self, job_id: str, *, status: JobStatus, status_detail: str, error_message: str | None = None, result: dict | None = None, result_path: str | None = None) -> bool:
    """Apply a terminal transition guarded by the current status."""

  async def find_by_status(self, status: JobStatus, *, limit: int = 100) -> list[JobRecord]:
    """Return jobs in a given status, oldest first."""

  async def find_purgeable(self, cutoff: datetime.datetime, *, limit: int = 100) -> list[JobRecord]:
    """Return terminal, unpurged jobs created before `cutoff`."""

  async def mark_purged(self, job_id: str, purged_at: datetime.datetime) -> bool:
    """Null every output path and stamp files_purged_at; False when already purged."""


JobsRepositoryFactory = Callable[[str], JobsRepository]
