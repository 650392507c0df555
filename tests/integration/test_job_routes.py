from __future__ import annotations

import datetime
import uuid
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from doctools.api.deps import get_runtime
from doctools.core.database import get_db
from doctools.core.errors import QuotaExceededError
from doctools.core.lifespan import Runtime
from doctools.core.security import CurrentUser, get_current_active_user
from doctools.main import app
from doctools.services import jobs as job_service


@asynccontextmanager
async def _transaction():
  yield


SUMMARIZER_PAYLOAD = {"payload": {"documents": [{"filename": "paper.pdf", "text": "Some extracted text."}], "document_kind": "research"}}


class Caller:
  """Mutable stand-in for the authenticated user."""

  def __init__(self, user: CurrentUser) -> None:
    self.user = user

  async def __call__(self) -> CurrentUser:
    return self.user


@pytest.fixture
def dispatcher():  # type: ignore[no-untyped-def]
  class RecordingDispatcher:
    def __init__(self) -> None:
      self.dispatched: list[tuple[str, str]] = []

    def dispatch(self, module_key: str, job_id: str) -> None:
      self.dispatched.append((module_key, job_id))

  return RecordingDispatcher()


@pytest.fixture
def caller(owner) -> Caller:
  return Caller(owner)


@pytest.fixture
async def async_client(registry, repo_store, artifacts, dispatcher, caller, mock_db_session, override_get_db, monkeypatch: pytest.MonkeyPatch):  # type: ignore[no-untyped-def]
  async def admit(session, **kwargs):  # type: ignore[no-untyped-def]
    return None

  monkeypatch.setattr(job_service, "check_quota", admit)
  monkeypatch.setattr(job_service, "record_job_start", admit)
  # AsyncSession.in_transaction is sync and begin() returns an async context manager.
  mock_db_session.in_transaction = MagicMock(return_value=False)
  mock_db_session.begin = MagicMock(side_effect=lambda: _transaction())
  runtime = Runtime(registry=registry, repo_factory=repo_store.factory, artifacts=artifacts, dispatcher=dispatcher)
  app.dependency_overrides[get_runtime] = lambda: runtime
  app.dependency_overrides[get_current_active_user] = caller
  app.dependency_overrides[get_db] = override_get_db
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_submit_job_returns_202_and_dispatches(async_client, dispatcher, repo_store, mock_db_session) -> None:
  response = await async_client.post("/api/summarizer/jobs", json=SUMMARIZER_PAYLOAD)

  assert response.status_code == 202
  body = response.json()
  assert body["status"] == "pending"
  assert body["status_url"] == f"/api/summarizer/jobs/{body['job_id']}"
  assert dispatcher.dispatched == [("summarizer", body["job_id"])]
  assert body["job_id"] in repo_store.factory("summarizer").jobs
  # Admission ran inside one top-level transaction.
  mock_db_session.begin.assert_called_once_with()
  mock_db_session.begin_nested.assert_not_called()


@pytest.mark.anyio
async def test_quota_rejection_returns_429_without_dispatch(async_client, dispatcher, monkeypatch: pytest.MonkeyPatch) -> None:
  async def reject(session, **kwargs):  # type: ignore[no-untyped-def]
    raise QuotaExceededError("Weekly token limit reached (950 used + 100 projected > 1000).")

  monkeypatch.setattr(job_service, "check_quota", reject)

  response = await async_client.post("/api/summarizer/jobs", json=SUMMARIZER_PAYLOAD)

  assert response.status_code == 429
  assert response.json()["detail"].startswith("Weekly token limit reached")
  assert "requestId" in response.json()
  assert dispatcher.dispatched == []


@pytest.mark.anyio
async def test_invalid_payload_returns_422(async_client, dispatcher) -> None:
  response = await async_client.post("/api/summarizer/jobs", json={"payload": {"documents": []}})
  assert response.status_code == 422
  assert response.json()["detail"] == "At least one document is required"
  assert dispatcher.dispatched == []


@pytest.mark.anyio
async def test_unexpected_body_fields_are_rejected(async_client) -> None:
  response = await async_client.post("/api/summarizer/jobs", json={**SUMMARIZER_PAYLOAD, "priority": "high"})
  assert response.status_code == 422


@pytest.mark.anyio
async def test_unknown_module_returns_404(async_client) -> None:
  response = await async_client.post("/api/transcriber/jobs", json=SUMMARIZER_PAYLOAD)
  assert response.status_code == 404
  assert response.json()["detail"] == "Unknown module"


@pytest.mark.anyio
async def test_status_is_visible_to_owner_only(async_client, caller, registry, seed_job) -> None:
  job = await seed_job(registry.resolve("summarizer"), SUMMARIZER_PAYLOAD["payload"])

  response = await async_client.get(f"/api/summarizer/jobs/{job.job_id}")
  assert response.status_code == 200
  body = response.json()
  assert body["status"] == "pending"
  assert body["download_url"] is None
  assert [item["label"] for item in body["items"]] == ["paper.pdf"]

  caller.user = CurrentUser(id=uuid.uuid4(), username="stranger")
  response = await async_client.get(f"/api/summarizer/jobs/{job.job_id}")
  assert response.status_code == 403


@pytest.mark.anyio
async def test_status_of_unknown_job_returns_404(async_client) -> None:
  response = await async_client.get(f"/api/summarizer/jobs/{uuid.uuid4()}")
  assert response.status_code == 404
  assert response.json()["detail"] == "Job not found"


@pytest.mark.anyio
async def test_download_after_purge_returns_410(async_client, registry, repo_store, seed_job) -> None:
  job = await seed_job(registry.resolve("summarizer"), SUMMARIZER_PAYLOAD["payload"])
  repo = repo_store.factory("summarizer")
  await repo.finish_job(job.job_id, status="failed", status_detail="Failed")
  await repo.mark_purged(job.job_id, datetime.datetime.now(datetime.UTC))

  response = await async_client.get(f"/api/summarizer/jobs/{job.job_id}/download")
  assert response.status_code == 410

  status_body = (await async_client.get(f"/api/summarizer/jobs/{job.job_id}")).json()
  assert status_body["files_purged"] is True


@pytest.mark.anyio
async def test_download_serves_completed_result(async_client, registry, repo_store, artifacts, seed_job) -> None:
  job = await seed_job(registry.resolve("summarizer"), SUMMARIZER_PAYLOAD["payload"])
  repo = repo_store.factory("summarizer")
  result_path = await artifacts.write_aggregate("summarizer", job.job_id, "summaries.txt", "Summary body")
  await repo.claim_job(job.job_id)
  await repo.finish_job(job.job_id, status="completed", status_detail="Completed", result={}, result_path=result_path)

  status_body = (await async_client.get(f"/api/summarizer/jobs/{job.job_id}")).json()
  assert status_body["download_url"] == f"/api/summarizer/jobs/{job.job_id}/download"
  response = await async_client.get(status_body["download_url"])
  assert response.status_code == 200
  assert response.text == "Summary body"


@pytest.mark.anyio
async def test_modules_lists_registered_handlers(async_client) -> None:
  response = await async_client.get("/api/modules")
  assert response.status_code == 200
  modules = {entry["key"]: entry for entry in response.json()}
  assert set(modules) == {"summarizer", "translatedocx", "grader", "info_extract", "reviewer"}
  assert modules["grader"]["attempt_cap"] == 1
  assert modules["reviewer"]["concurrency_cap"] == 8


@pytest.mark.anyio
async def test_admin_routes_require_admin(async_client) -> None:
  response = await async_client.get("/admin/modules/summarizer/config")
  assert response.status_code == 403


@pytest.mark.anyio
async def test_admin_module_config_defaults_and_unknown_keys(async_client, caller, mock_db_session) -> None:
  caller.user = CurrentUser(id=uuid.uuid4(), username="admin", is_admin=True)
  mock_db_session.get.return_value = None

  response = await async_client.get("/admin/modules/summarizer/config")
  assert response.status_code == 200
  assert set(response.json()["prompts"]) == {"research_summary", "general_summary", "translation"}

  response = await async_client.put("/admin/modules/summarizer/config", json={"models": {"vision_model": "openrouter/x"}})
  assert response.status_code == 422
  assert "vision_model" in response.json()["detail"]


@pytest.mark.anyio
async def test_admin_group_limits_reject_unknown_modules(async_client, caller) -> None:
  caller.user = CurrentUser(id=uuid.uuid4(), username="admin", is_admin=True)
  response = await async_client.put(f"/admin/usage-groups/{uuid.uuid4()}/limits", json={"token_limit": "", "modules": {"transcriber": {"unit_limit": 5}}})
  assert response.status_code == 422


@pytest.mark.anyio
async def test_admin_group_limits_reject_negative_values(async_client, caller) -> None:
  caller.user = CurrentUser(id=uuid.uuid4(), username="admin", is_admin=True)
  response = await async_client.put(f"/admin/usage-groups/{uuid.uuid4()}/limits", json={"token_limit": -5})
  assert response.status_code == 422


@pytest.mark.anyio
async def test_admin_glossary_rejects_duplicate_sources(async_client, caller, mock_db_session) -> None:
  caller.user = CurrentUser(id=uuid.uuid4(), username="admin", is_admin=True)
  response = await async_client.put("/admin/glossary", json={"terms": [{"source": "Cell", "target": "细胞"}, {"source": "cell", "target": "单元"}]})
  assert response.status_code == 422
  assert "Duplicate glossary source term" in response.json()["detail"]
  mock_db_session.commit.assert_not_awaited()


@pytest.mark.anyio
async def test_admin_journal_catalog_requires_admin(async_client) -> None:
  response = await async_client.get("/admin/journals")
  assert response.status_code == 403


@pytest.mark.anyio
async def test_health(async_client) -> None:
  response = await async_client.get("/health")
  assert response.json() == {"status": "ok", "version": "0.1.0"}
