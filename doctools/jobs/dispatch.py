"""In-process dispatch of admitted jobs to the worker, plus startup recovery."""

from __future__ import annotations

import asyncio
import logging

from doctools.jobs.registry import ModuleRegistry
from doctools.jobs.worker import JobWorker
from doctools.storage.jobs_repo import JobsRepositoryFactory

logger = logging.getLogger(__name__)

RESTART_FAILURE_MESSAGE = "Interrupted by service restart"


class JobDispatcher:
  """Launch one asyncio task per job and keep strong references until it settles."""

  def __init__(self, worker: JobWorker) -> None:
    self._worker = worker
    self._tasks: set[asyncio.Task] = set()

  @property
  def in_flight(self) -> int:
    return len(self._tasks)

  def dispatch(self, module_key: str, job_id: str) -> asyncio.Task:
    task = asyncio.create_task(self._worker.run(module_key, job_id), name=f"job:{module_key}:{job_id}")
    self._tasks.add(task)
    task.add_done_callback(self._on_done)
    return task

  def _on_done(self, task: asyncio.Task) -> None:
    self._tasks.discard(task)
    if task.cancelled():
      logger.warning("Job task cancelled name=%s", task.get_name())
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Job task raised name=%s", task.get_name(), exc_info=exc)

  async def drain(self) -> None:
    """Wait for every in-flight job task."""
    if self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)

  async def shutdown(self) -> None:
    """Cancel in-flight tasks; their jobs are recovered on the next start."""
    tasks = list(self._tasks)
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)


async def recover_orphaned_jobs(*, dispatcher: JobDispatcher, registry: ModuleRegistry, repo_factory: JobsRepositoryFactory, batch_size: int = 500) -> dict[str, int]:
  """Re-dispatch pending jobs and fail jobs a previous process left processing."""
  counts = {"redispatched": 0, "failed": 0}
  for module_key in registry.keys():
    repo = repo_factory(module_key)
    for job in await repo.find_by_status("processing", limit=batch_size):
      if await repo.finish_job(job.job_id, status="failed", status_detail="Failed", error_message=RESTART_FAILURE_MESSAGE):
        counts["failed"] += 1
    for job in await repo.find_by_status("pending", limit=batch_size):
      dispatcher.dispatch(module_key, job.job_id)
      counts["redispatched"] += 1
  if counts["redispatched"] or counts["failed"]:
    logger.info("Recovered orphaned jobs redispatched=%d failed=%d", counts["redispatched"], counts["failed"])
  return counts
