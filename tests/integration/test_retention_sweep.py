from __future__ import annotations

import datetime

import pytest

from doctools.core.errors import StorageError
from doctools.services.maintenance import RetentionSweeper, SweepReport, sweep_expired_jobs
from doctools.storage.artifacts import ArtifactStore

NOW = datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.UTC)


async def _finished_job(repo_store, artifacts, seed_job, registry, *, age_hours: float, status: str = "completed"):  # type: ignore[no-untyped-def]
  handler = registry.resolve("summarizer")
  job = await seed_job(handler, {"documents": [{"filename": "a.pdf", "text": "alpha"}]}, created_at=NOW - datetime.timedelta(hours=age_hours))
  repo = repo_store.factory("summarizer")
  item_path = await artifacts.write_item("summarizer", job.job_id, 1, 0, "a_summary.txt", "summary")
  result_path = await artifacts.write_aggregate("summarizer", job.job_id, "summaries.txt", "summary")
  await repo.claim_job(job.job_id)
  await repo.finish_item(job.job_id, 1, 0, status="completed", attempt_count=1, output_text="{}", output_path=item_path)
  if status != "processing":
    await repo.finish_job(job.job_id, status=status, status_detail=status.title(), result={}, result_path=result_path)
  return job


@pytest.mark.anyio
async def test_sweep_purges_jobs_past_retention(registry, repo_store, artifacts, seed_job) -> None:
  job = await _finished_job(repo_store, artifacts, seed_job, registry, age_hours=25)
  job_dir = artifacts.job_dir("summarizer", job.job_id)
  assert job_dir.is_dir()

  report = await sweep_expired_jobs(module_keys=["summarizer"], repo_factory=repo_store.factory, artifacts=artifacts, retention_hours=24, now=NOW)

  assert report.purged == 1
  assert report.purged_job_ids == [job.job_id]
  assert not job_dir.exists()
  repo = repo_store.factory("summarizer")
  purged = await repo.get_job(job.job_id)
  assert purged is not None
  assert purged.files_purged_at == NOW
  assert purged.result_path is None
  assert purged.status == "completed"
  assert all(item.output_path is None for item in await repo.list_items(job.job_id))


@pytest.mark.anyio
async def test_sweep_is_idempotent(registry, repo_store, artifacts, seed_job) -> None:
  await _finished_job(repo_store, artifacts, seed_job, registry, age_hours=30, status="failed")

  first = await sweep_expired_jobs(module_keys=["summarizer"], repo_factory=repo_store.factory, artifacts=artifacts, retention_hours=24, now=NOW)
  second = await sweep_expired_jobs(module_keys=["summarizer"], repo_factory=repo_store.factory, artifacts=artifacts, retention_hours=24, now=NOW)

  assert first.purged == 1
  assert second == SweepReport()


@pytest.mark.anyio
async def test_sweep_skips_recent_and_in_flight_jobs(registry, repo_store, artifacts, seed_job) -> None:
  recent = await _finished_job(repo_store, artifacts, seed_job, registry, age_hours=23)
  running = await _finished_job(repo_store, artifacts, seed_job, registry, age_hours=48, status="processing")

  report = await sweep_expired_jobs(module_keys=["summarizer"], repo_factory=repo_store.factory, artifacts=artifacts, retention_hours=24, now=NOW)

  assert report.purged == 0
  assert artifacts.job_dir("summarizer", recent.job_id).is_dir()
  assert artifacts.job_dir("summarizer", running.job_id).is_dir()


class BrokenArtifactStore(ArtifactStore):
  async def remove_job_dir(self, module_key: str, job_id: str) -> None:
    raise StorageError("permission denied")


@pytest.mark.anyio
async def test_sweep_leaves_job_unpurged_when_removal_fails(registry, repo_store, artifacts, seed_job) -> None:
  job = await _finished_job(repo_store, artifacts, seed_job, registry, age_hours=25)
  broken = BrokenArtifactStore(artifacts.root)

  report = await sweep_expired_jobs(module_keys=["summarizer"], repo_factory=repo_store.factory, artifacts=broken, retention_hours=24, now=NOW)

  assert report.purged == 0
  assert report.skipped == 1
  stored = await repo_store.factory("summarizer").get_job(job.job_id)
  assert stored is not None and stored.files_purged_at is None


@pytest.mark.anyio
async def test_sweep_purges_history_with_same_cutoff(repo_store, artifacts) -> None:
  cutoffs: list[datetime.datetime] = []

  async def purger(cutoff: datetime.datetime) -> int:
    cutoffs.append(cutoff)
    return 4

  report = await sweep_expired_jobs(module_keys=["summarizer"], repo_factory=repo_store.factory, artifacts=artifacts, retention_hours=24, history_purger=purger, now=NOW)

  assert report.history_removed == 4
  assert cutoffs == [NOW - datetime.timedelta(hours=24)]


@pytest.mark.anyio
async def test_sweep_treats_missing_directory_as_removed(registry, repo_store, artifacts, seed_job) -> None:
  job = await seed_job(registry.resolve("summarizer"), {"documents": [{"filename": "a.pdf", "text": "alpha"}]}, created_at=NOW - datetime.timedelta(hours=26))
  repo = repo_store.factory("summarizer")
  await repo.finish_job(job.job_id, status="failed", status_detail="Failed", error_message="boom")

  report = await sweep_expired_jobs(module_keys=["summarizer"], repo_factory=repo_store.factory, artifacts=artifacts, retention_hours=24, now=NOW)

  assert report.purged == 1


@pytest.mark.anyio
async def test_sweeper_cycle_failures_are_contained() -> None:
  async def failing_sweep() -> SweepReport:
    raise RuntimeError("database unavailable")

  sweeper = RetentionSweeper(failing_sweep, interval_seconds=3600)
  assert await sweeper.run_once() is None


@pytest.mark.anyio
async def test_sweeper_start_and_stop() -> None:
  runs: list[int] = []

  async def sweep() -> SweepReport:
    runs.append(1)
    return SweepReport()

  sweeper = RetentionSweeper(sweep, interval_seconds=3600)
  sweeper.start()
  assert sweeper.running
  await sweeper.stop()
  assert not sweeper.running
