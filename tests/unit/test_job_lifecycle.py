from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from doctools.core.errors import InvalidTransitionError
from doctools.jobs.models import JobItemRecord, is_terminal, transition
from doctools.jobs.policy import ModulePolicy, SuccessThreshold, at_least, at_least_one, derive_job_status, fixed_delay, linear_delay, require_all, round_outcome
from doctools.storage import postgres_jobs_repo
from doctools.storage.postgres_jobs_repo import PostgresJobsRepository


def _item(round_number: int, ordinal: int, status: str) -> JobItemRecord:
  return JobItemRecord(job_id="job-1", round=round_number, ordinal=ordinal, label=f"item {ordinal}", status=status)  # type: ignore[arg-type]


@pytest.mark.parametrize(("current", "target"), [("pending", "processing"), ("pending", "failed"), ("processing", "completed"), ("processing", "failed")])
def test_transition_allows_lifecycle_edges(current: str, target: str) -> None:
  assert transition(current, target) == target


@pytest.mark.parametrize(("current", "target"), [("completed", "processing"), ("failed", "pending"), ("completed", "failed"), ("pending", "completed"), ("processing", "pending")])
def test_transition_rejects_backwards_and_skipping_edges(current: str, target: str) -> None:
  with pytest.raises(InvalidTransitionError):
    transition(current, target)


def test_terminal_statuses_are_absorbing() -> None:
  assert is_terminal("completed")
  assert is_terminal("failed")
  assert not is_terminal("pending")
  assert not is_terminal("processing")


def test_require_all_threshold_needs_every_item() -> None:
  threshold = require_all()
  assert threshold.is_met(3, 3)
  assert not threshold.is_met(2, 3)
  assert threshold.describe(3) == "all 3"


def test_at_least_threshold_is_capped_by_round_size() -> None:
  threshold = at_least(4)
  assert threshold.is_met(4, 8)
  assert not threshold.is_met(3, 8)
  # A round smaller than the minimum needs every item.
  assert threshold.is_met(2, 2)
  assert threshold.describe(8) == "at least 4 of 8"


def test_at_least_one_rejects_all_failed_round() -> None:
  assert not at_least_one().is_met(0, 5)
  assert at_least_one().is_met(1, 5)


def test_at_least_rejects_zero() -> None:
  with pytest.raises(ValueError):
    at_least(0)


def test_policy_rejects_invalid_caps() -> None:
  with pytest.raises(ValueError):
    ModulePolicy(attempt_cap=0, concurrency_cap=1)
  with pytest.raises(ValueError):
    ModulePolicy(attempt_cap=1, concurrency_cap=0)
  with pytest.raises(ValueError):
    ModulePolicy(attempt_cap=1, concurrency_cap=1, units_per_item=-1)


def test_rounds_without_threshold_require_all() -> None:
  policy = ModulePolicy(attempt_cap=1, concurrency_cap=1, thresholds={1: at_least_one()})
  assert policy.threshold_for(2) == SuccessThreshold(minimum=None)


def test_delays() -> None:
  assert [linear_delay(1.5)(attempt) for attempt in (1, 2)] == [1.5, 3.0]
  assert fixed_delay(2.0)(5) == 2.0


def test_derive_job_status_checks_every_round() -> None:
  policy = ModulePolicy(attempt_cap=3, concurrency_cap=8, thresholds={1: at_least(4), 2: require_all()})
  round1 = [_item(1, index, "completed" if index < 5 else "failed") for index in range(8)]
  assert derive_job_status(round1, policy) == "completed"
  assert derive_job_status([*round1, _item(2, 0, "failed")], policy) == "failed"
  assert derive_job_status([*round1, _item(2, 0, "completed")], policy) == "completed"


def test_derive_job_status_fails_empty_job() -> None:
  assert derive_job_status([], ModulePolicy(attempt_cap=1, concurrency_cap=1)) == "failed"


def test_round_outcome_counts_only_completed_items() -> None:
  items = [_item(1, 0, "completed"), _item(1, 1, "processing"), _item(1, 2, "failed")]
  assert not round_outcome(items, at_least(2))
  assert round_outcome(items, at_least_one())


def _finish_session(current: str | None, *, rowcount: int = 1) -> AsyncMock:
  session = AsyncMock()
  status_result = MagicMock()
  status_result.scalar_one_or_none.return_value = current
  update_result = MagicMock()
  update_result.rowcount = rowcount
  session.execute.side_effect = [status_result, update_result]
  return session


def _postgres_repo(session: AsyncMock, monkeypatch: pytest.MonkeyPatch) -> PostgresJobsRepository:
  @asynccontextmanager
  async def _factory():  # type: ignore[no-untyped-def]
    yield session

  monkeypatch.setattr(postgres_jobs_repo, "get_session_factory", lambda: _factory)
  return PostgresJobsRepository("summarizer")


@pytest.mark.anyio
async def test_postgres_finish_job_leaves_terminal_jobs_alone(monkeypatch: pytest.MonkeyPatch) -> None:
  session = _finish_session("completed")
  repo = _postgres_repo(session, monkeypatch)

  assert not await repo.finish_job("job-1", status="failed", status_detail="Failed", error_message="late failure")
  assert session.execute.await_count == 1
  session.rollback.assert_awaited_once()
  session.commit.assert_not_awaited()


@pytest.mark.anyio
async def test_postgres_finish_job_updates_processing_jobs(monkeypatch: pytest.MonkeyPatch) -> None:
  session = _finish_session("processing")
  repo = _postgres_repo(session, monkeypatch)

  assert await repo.finish_job("job-1", status="completed", status_detail="Completed", result={"rows": 1})
  assert session.execute.await_count == 2
  session.commit.assert_awaited_once()


@pytest.mark.anyio
async def test_postgres_finish_job_rejects_skipping_processing(monkeypatch: pytest.MonkeyPatch) -> None:
  session = _finish_session("pending")
  repo = _postgres_repo(session, monkeypatch)

  assert not await repo.finish_job("job-1", status="completed", status_detail="Completed")
  assert session.execute.await_count == 1
