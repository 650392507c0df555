"""Shared fixtures: in-memory job storage, a scripted LLM, and a wired worker."""

from __future__ import annotations

import datetime
import uuid
from collections.abc import Callable
from dataclasses import replace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from doctools.ai.providers.base import LlmRequest, LlmResponse, TokenUsage
from doctools.core.errors import InvalidTransitionError
from doctools.core.security import CurrentUser
from doctools.jobs.models import TERMINAL_STATUSES, JobItemRecord, JobRecord, JobStatus, transition, utc_now
from doctools.jobs.registry import ModuleHandler, ModuleRegistry, build_default_registry
from doctools.jobs.worker import JobWorker
from doctools.storage.artifacts import ArtifactStore


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class InMemoryJobsRepo:
  """In-memory jobs repository with the same guarded transitions as Postgres."""

  def __init__(self, module_key: str) -> None:
    self.module_key = module_key
    self.jobs: dict[str, JobRecord] = {}
    self.items: dict[tuple[str, int, int], JobItemRecord] = {}

  async def create_job(self, job: JobRecord, items: list[JobItemRecord], *, session: Any = None) -> None:
    self.jobs[job.job_id] = job
    for item in items:
      self.items[(item.job_id, item.round, item.ordinal)] = item

  async def get_job(self, job_id: str) -> JobRecord | None:
    return self.jobs.get(job_id)

  async def list_items(self, job_id: str, *, round_number: int | None = None) -> list[JobItemRecord]:
    found = [item for key, item in self.items.items() if key[0] == job_id and (round_number is None or key[1] == round_number)]
    return sorted(found, key=lambda item: (item.round, item.ordinal))

  async def add_items(self, items: list[JobItemRecord]) -> None:
    for item in items:
      self.items[(item.job_id, item.round, item.ordinal)] = item

  async def claim_job(self, job_id: str) -> JobRecord | None:
    job = self.jobs.get(job_id)
    if job is None or job.status != "pending":
      return None
    claimed = replace(job, status="processing", status_detail="Processing started", updated_at=utc_now())
    self.jobs[job_id] = claimed
    return claimed

  async def update_progress(self, job_id: str, status_detail: str) -> bool:
    job = self.jobs.get(job_id)
    if job is None or job.status not in ("pending", "processing"):
      return False
    self.jobs[job_id] = replace(job, status_detail=status_detail)
    return True

  def _update_item(self, job_id: str, round_number: int, ordinal: int, **changes: Any) -> None:
    key = (job_id, round_number, ordinal)
    item = self.items.get(key)
    if item is not None:
      self.items[key] = replace(item, **changes)

  async def start_item(self, job_id: str, round_number: int, ordinal: int, *, status_detail: str | None = None) -> None:
    self._update_item(job_id, round_number, ordinal, status="processing", status_detail=status_detail)

  async def record_item_attempt(self, job_id: str, round_number: int, ordinal: int, *, attempt_count: int, error_message: str) -> None:
    self._update_item(job_id, round_number, ordinal, attempt_count=attempt_count, error_message=error_message)

  async def finish_item(self, job_id: str, round_number: int, ordinal: int, *, status: JobStatus, attempt_count: int, status_detail: str | None = None, error_message: str | None = None, output_text: str | None = None, output_path: str | None = None, tokens_used: int = 0) -> None:
    current = self.items.get((job_id, round_number, ordinal))
    if current is None or current.status in TERMINAL_STATUSES:
      return
    changes: dict[str, Any] = {"status": status, "attempt_count": attempt_count, "status_detail": status_detail, "output_text": output_text, "output_path": output_path, "tokens_used": max(tokens_used, 0)}
    if error_message is not None:
      changes["error_message"] = error_message
    self._update_item(job_id, round_number, ordinal, **changes)

  async def add_usage(self, job_id: str, *, units: int, tokens: int) -> None:
    job = self.jobs[job_id]
    self.jobs[job_id] = replace(job, usage_delta=job.usage_delta + max(units, 0), total_tokens=job.total_tokens + max(tokens, 0))

  async def finish_job(self, job_id: str, *, status: JobStatus, status_detail: str, error_message: str | None = None, result: dict | None = None, result_path: str | None = None) -> bool:
    job = self.jobs.get(job_id)
    if job is None:
      return False
    try:
      target = transition(job.status, status)
    except InvalidTransitionError:
      return False
    now = utc_now()
    self.jobs[job_id] = replace(job, status=target, status_detail=status_detail, error_message=error_message, result=result, result_path=result_path, updated_at=now, completed_at=now)
    return True

  async def find_by_status(self, status: JobStatus, *, limit: int = 100) -> list[JobRecord]:
    return sorted((job for job in self.jobs.values() if job.status == status), key=lambda job: job.created_at)[:limit]

  async def find_purgeable(self, cutoff: datetime.datetime, *, limit: int = 100) -> list[JobRecord]:
    found = [job for job in self.jobs.values() if job.status in TERMINAL_STATUSES and job.files_purged_at is None and job.created_at < cutoff]
    return sorted(found, key=lambda job: job.created_at)[:limit]

  async def mark_purged(self, job_id: str, purged_at: datetime.datetime) -> bool:
    job = self.jobs.get(job_id)
    if job is None or job.files_purged_at is not None or job.status not in TERMINAL_STATUSES:
      return False
    self.jobs[job_id] = replace(job, result_path=None, files_purged_at=purged_at, updated_at=purged_at)
    for key, item in list(self.items.items()):
      if key[0] == job_id:
        self.items[key] = replace(item, output_path=None)
    return True


class RepoStore:
  """One in-memory repository per module, handed out like `postgres_repo_factory`."""

  def __init__(self) -> None:
    self.repos: dict[str, InMemoryJobsRepo] = {}

  def factory(self, module_key: str) -> InMemoryJobsRepo:
    return self.repos.setdefault(module_key, InMemoryJobsRepo(module_key))


class FakeLlmClient:
  """LlmClient whose replies come from a responder; exceptions it returns are raised."""

  def __init__(self, responder: Callable[[LlmRequest], str | BaseException], *, tokens: int = 10) -> None:
    self._responder = responder
    self._tokens = tokens
    self.requests: list[LlmRequest] = []

  async def execute(self, request: LlmRequest) -> LlmResponse:
    self.requests.append(request)
    outcome = self._responder(request)
    if isinstance(outcome, BaseException):
      raise outcome
    return LlmResponse(text=outcome, token_usage=TokenUsage(prompt_tokens=self._tokens // 2, response_tokens=self._tokens - self._tokens // 2, total_tokens=self._tokens), provider="fake", model=request.model)


class UsageLog:
  """Collects usage events the worker reports."""

  def __init__(self) -> None:
    self.events: list[tuple[str, str, int, int]] = []

  async def __call__(self, user_id: str, module_key: str, tokens: int, units: int) -> None:
    self.events.append((user_id, module_key, tokens, units))

  def units(self, module_key: str) -> int:
    return sum(units for _, key, _, units in self.events if key == module_key)

  def tokens(self) -> int:
    return sum(tokens for _, _, tokens, _ in self.events)


class FakeDispatcher:
  def __init__(self) -> None:
    self.dispatched: list[tuple[str, str]] = []

  def dispatch(self, module_key: str, job_id: str) -> None:
    self.dispatched.append((module_key, job_id))


async def no_sleep(seconds: float) -> None:
  return None


@pytest.fixture
def repo_store() -> RepoStore:
  return RepoStore()


@pytest.fixture
def registry() -> ModuleRegistry:
  return build_default_registry()


@pytest.fixture
def usage_log() -> UsageLog:
  return UsageLog()


@pytest.fixture
def artifacts(tmp_path) -> ArtifactStore:
  return ArtifactStore(tmp_path / "storage")


@pytest.fixture
def owner() -> CurrentUser:
  return CurrentUser(id=uuid.uuid4(), username="owner")


@pytest.fixture
def make_llm() -> Callable[..., FakeLlmClient]:
  return FakeLlmClient


@pytest.fixture
def make_worker(registry, repo_store, artifacts, usage_log) -> Callable[[FakeLlmClient], JobWorker]:
  def _make(llm: FakeLlmClient) -> JobWorker:
    return JobWorker(registry=registry, repo_factory=repo_store.factory, llm=llm, artifacts=artifacts, usage_recorder=usage_log, sleep=no_sleep)

  return _make


@pytest.fixture
def seed_job(repo_store, owner) -> Callable[..., Any]:
  """Persist a pending job built by a handler, as admission would."""

  async def _seed(handler: ModuleHandler, payload: dict[str, Any], *, user: CurrentUser | None = None, created_at: datetime.datetime | None = None) -> JobRecord:
    normalized = handler.validate_payload(payload)
    job_id = str(uuid.uuid4())
    now = created_at or utc_now()
    job = JobRecord(job_id=job_id, user_id=str((user or owner).id), module_key=handler.key, status="pending", payload=normalized, created_at=now, updated_at=now, status_detail="Queued")
    await repo_store.factory(handler.key).create_job(job, handler.build_items(job_id, normalized))
    return job

  return _seed


@pytest.fixture
def mock_db_session():
  session = AsyncMock()
  # Mock execute result
  result = MagicMock()
  result.scalar_one_or_none.return_value = None
  result.scalar_one.return_value = None
  session.execute.return_value = result
  return session


@pytest.fixture
def override_get_db(mock_db_session):
  async def _get_db():
    yield mock_db_session

  return _get_db
