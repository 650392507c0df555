"""End-to-end worker runs against in-memory storage and a scripted LLM."""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path

import pytest

from doctools.ai.providers.base import LlmRequest
from doctools.core.errors import ProviderError
from doctools.modules.reviewer import DEFAULT_ROUND1_MODELS

GRADING_REPLY = json.dumps({"Level 1": 10, "Level 2": 20, "Level 3": 30, "Level 4": 40, "Level 5": 50, "Level 6": 60, "justification": "Solid methods."})


def _user_text(request: LlmRequest) -> str:
  return request.messages[-1].text


@pytest.mark.anyio
async def test_summarizer_fails_job_when_one_document_exhausts_retries(registry, repo_store, usage_log, make_llm, make_worker, seed_job) -> None:
  """Require-all module: one permanently failing document fails the whole job."""

  def responder(request: LlmRequest):
    if "BROKEN" in _user_text(request):
      return ProviderError("upstream 503", provider="fake")
    return "A concise summary."

  llm = make_llm(responder)
  handler = registry.resolve("summarizer")
  job = await seed_job(handler, {"documents": [{"filename": "a.pdf", "text": "alpha"}, {"filename": "b.pdf", "text": "BROKEN beta"}, {"filename": "c.pdf", "text": "gamma"}]})

  final = await make_worker(llm).run("summarizer", job.job_id)

  assert final is not None
  assert final.status == "failed"
  assert "Round 1: 2 of 3 item(s) succeeded" in (final.error_message or "")
  assert final.result == {"item_errors": [{"round": 1, "ordinal": 1, "label": "b.pdf", "error": "upstream 503"}]}
  assert final.result_path is None
  items = await repo_store.factory("summarizer").list_items(job.job_id)
  assert [item.status for item in items] == ["completed", "failed", "completed"]
  assert items[1].attempt_count == 3
  # Successful items are still charged; the failed one is not.
  assert usage_log.units("summarizer") == 2
  assert final.usage_delta == 2
  assert len(llm.requests) == 5
  assert Path(items[0].output_path or "").is_file()


@pytest.mark.anyio
async def test_summarizer_retries_then_completes(registry, repo_store, make_llm, make_worker, seed_job) -> None:
  calls = 0

  def responder(request: LlmRequest):
    nonlocal calls
    calls += 1
    if calls < 3:
      return ProviderError("rate limited")
    return "Recovered summary."

  handler = registry.resolve("summarizer")
  job = await seed_job(handler, {"documents": [{"filename": "paper.pdf", "text": "content"}], "document_kind": "research"})

  final = await make_worker(make_llm(responder)).run("summarizer", job.job_id)

  assert final is not None
  assert final.status == "completed"
  assert final.completed_at is not None
  items = await repo_store.factory("summarizer").list_items(job.job_id)
  assert items[0].attempt_count == 3
  assert Path(final.result_path or "").read_text(encoding="utf-8").count("Recovered summary.") == 1
  assert final.result is not None and final.result["document_kind"] == "research"


@pytest.mark.anyio
async def test_summarizer_translation_failure_does_not_fail_item(registry, make_llm, make_worker, seed_job) -> None:
  def responder(request: LlmRequest):
    if "Translate the following text" in _user_text(request):
      return ProviderError("translation model down")
    return "English summary."

  handler = registry.resolve("summarizer")
  job = await seed_job(handler, {"documents": [{"filename": "paper.pdf", "text": "content"}], "translate": True, "glossary": [{"source": "cell", "target": "细胞"}]})

  final = await make_worker(make_llm(responder)).run("summarizer", job.job_id)

  assert final is not None
  assert final.status == "completed"
  assert final.result is not None
  assert final.result["documents"] == [{"filename": "paper.pdf", "translated": False, "translation_error": "translation model down"}]


@pytest.mark.anyio
async def test_info_extract_completes_with_partial_failures(registry, repo_store, usage_log, make_llm, make_worker, seed_job) -> None:
  def responder(request: LlmRequest):
    if "File name: bad.pdf" in _user_text(request):
      return "I could not find anything."
    return '```json\n{"title": "Deep Learning", "year": 2024}\n```'

  handler = registry.resolve("info_extract")
  payload = {"documents": [{"filename": "good.pdf", "text": "paper one"}, {"filename": "bad.pdf", "text": "paper two"}], "fields": [{"name": "title", "description": "Paper title"}, {"name": "year", "examples": ["2020"]}]}
  job = await seed_job(handler, payload)

  final = await make_worker(make_llm(responder)).run("info_extract", job.job_id)

  assert final is not None
  assert final.status == "completed"
  assert final.status_detail == "Completed with 1 failed item(s)"
  assert final.result is not None
  assert final.result["rows"] == 1
  assert [error["label"] for error in final.result["item_errors"]] == ["bad.pdf"]
  rows = list(csv.reader(io.StringIO(Path(final.result_path or "").read_text(encoding="utf-8"))))
  assert rows == [["filename", "title", "year"], ["good.pdf", "Deep Learning", "2024"]]
  assert usage_log.units("info_extract") == 1


@pytest.mark.anyio
async def test_info_extract_fails_when_every_document_fails(registry, make_llm, make_worker, seed_job) -> None:
  handler = registry.resolve("info_extract")
  payload = {"documents": [{"filename": "a.pdf", "text": "one"}], "fields": [{"name": "title", "description": "Paper title"}]}
  job = await seed_job(handler, payload)

  final = await make_worker(make_llm(lambda request: "not json")).run("info_extract", job.job_id)

  assert final is not None
  assert final.status == "failed"
  assert "needs at least 1 of 1" in (final.error_message or "")


@pytest.mark.anyio
async def test_reviewer_runs_three_rounds_when_enough_reviews_succeed(registry, repo_store, usage_log, make_llm, make_worker, seed_job) -> None:
  failing = set(DEFAULT_ROUND1_MODELS[5:])

  def responder(request: LlmRequest):
    if request.model in failing:
      return ProviderError("model unavailable", model=request.model)
    return f"Review text from {request.model}"

  handler = registry.resolve("reviewer")
  job = await seed_job(handler, {"documents": [{"filename": "manuscript.docx", "text": "Full manuscript."}]})

  final = await make_worker(make_llm(responder)).run("reviewer", job.job_id)

  assert final is not None
  assert final.status == "completed"
  assert final.result is not None
  assert final.result["round1_succeeded"] == 5
  assert final.result["round1_total"] == 8
  items = await repo_store.factory("reviewer").list_items(job.job_id)
  assert [(item.round, item.status) for item in items if item.round > 1] == [(2, "completed"), (3, "completed")]
  meta_input = items[8].input["reviews"]
  assert len(meta_input) == 5
  assert Path(final.result_path or "").read_text(encoding="utf-8").startswith("# Final report")
  assert usage_log.units("reviewer") == 1


@pytest.mark.anyio
async def test_reviewer_stops_after_round_one_below_threshold(registry, repo_store, usage_log, make_llm, make_worker, seed_job) -> None:
  failing = set(DEFAULT_ROUND1_MODELS[3:])

  def responder(request: LlmRequest):
    if request.model in failing:
      return ProviderError("model unavailable", model=request.model)
    return "A review."

  llm = make_llm(responder)
  handler = registry.resolve("reviewer")
  job = await seed_job(handler, {"documents": [{"filename": "manuscript.pdf", "text": "Full manuscript."}], "language": "chinese"})

  final = await make_worker(llm).run("reviewer", job.job_id)

  assert final is not None
  assert final.status == "failed"
  assert "Round 1: 3 of 8 item(s) succeeded (needs at least 4 of 8)" in (final.error_message or "")
  items = await repo_store.factory("reviewer").list_items(job.job_id)
  assert {item.round for item in items} == {1}
  assert len(llm.requests) == 3 + 5 * 3
  assert usage_log.units("reviewer") == 0
  assert "Simplified Chinese" in llm.requests[0].messages[0].text


@pytest.mark.anyio
async def test_grader_applies_docx_penalty(registry, usage_log, make_llm, make_worker, seed_job) -> None:
  llm = make_llm(lambda request: GRADING_REPLY)
  handler = registry.resolve("grader")
  job = await seed_job(handler, {"documents": [{"filename": "paper.docx", "text": "Manuscript body."}]})

  final = await make_worker(llm).run("grader", job.job_id)

  assert final is not None
  assert final.status == "completed"
  assert final.result is not None
  assert final.result["iqm_score"] == pytest.approx(26.0 * 0.98)
  assert final.result["docx_penalty_applied"] is True
  assert final.result["valid_runs"] == 12
  assert final.result["filename"] == "paper.docx"
  assert len(llm.requests) == 12
  assert usage_log.units("grader") == 1


@pytest.mark.anyio
async def test_grader_fails_without_enough_valid_samples(registry, make_llm, make_worker, seed_job) -> None:
  decreasing = json.dumps({"Level 1": 90, "Level 2": 80, "Level 3": 70, "Level 4": 60, "Level 5": 50, "Level 6": 40})
  llm = make_llm(lambda request: decreasing)
  handler = registry.resolve("grader")
  job = await seed_job(handler, {"documents": [{"filename": "paper.pdf", "text": "Manuscript body."}]})

  final = await make_worker(llm).run("grader", job.job_id)

  assert final is not None
  assert final.status == "failed"
  assert "Only 0 valid grading result(s) from 30 attempt(s)" in (final.error_message or "")
  assert len(llm.requests) == 30


@pytest.mark.anyio
async def test_translatedocx_reassembles_paragraphs_in_order(registry, make_llm, make_worker, seed_job) -> None:
  from doctools.modules.translatedocx import PARAGRAPH_SEPARATOR

  def responder(request: LlmRequest):
    source = _user_text(request).split("Input text:\n", 1)[1]
    return PARAGRAPH_SEPARATOR.join(f"译文 {part}" for part in source.split(PARAGRAPH_SEPARATOR))

  handler = registry.resolve("translatedocx")
  job = await seed_job(handler, {"documents": [{"filename": "paper.docx", "paragraphs": ["Title", "", "First paragraph.", "Second paragraph."]}]})

  final = await make_worker(make_llm(responder)).run("translatedocx", job.job_id)

  assert final is not None
  assert final.status == "completed"
  text = Path(final.result_path or "").read_text(encoding="utf-8")
  assert "译文 Title\n\n译文 First paragraph.\n译文 Second paragraph." in text
  assert final.result == {"direction": "en_to_cn", "documents": [{"filename": "paper.docx", "paragraphs": 4, "chunks": 2}]}


@pytest.mark.anyio
async def test_worker_does_not_rerun_claimed_job(registry, make_llm, make_worker, seed_job) -> None:
  llm = make_llm(lambda request: "Summary.")
  worker = make_worker(llm)
  job = await seed_job(registry.resolve("summarizer"), {"documents": [{"filename": "a.pdf", "text": "alpha"}]})

  first = await worker.run("summarizer", job.job_id)
  second = await worker.run("summarizer", job.job_id)

  assert first is not None and first.status == "completed"
  assert second == first
  assert len(llm.requests) == 1


@pytest.mark.anyio
async def test_missing_model_configuration_fails_item_without_retry(registry, repo_store, artifacts, usage_log, make_llm, seed_job) -> None:
  from doctools.jobs.registry import ModuleSettings
  from doctools.jobs.worker import JobWorker

  async def empty_settings(handler):  # type: ignore[no-untyped-def]
    return ModuleSettings(models={}, prompts={})

  llm = make_llm(lambda request: "unused")
  worker = JobWorker(registry=registry, repo_factory=repo_store.factory, llm=llm, artifacts=artifacts, usage_recorder=usage_log, settings_loader=empty_settings)
  job = await seed_job(registry.resolve("summarizer"), {"documents": [{"filename": "a.pdf", "text": "alpha"}]})

  final = await worker.run("summarizer", job.job_id)

  assert final is not None
  assert final.status == "failed"
  items = await repo_store.factory("summarizer").list_items(job.job_id)
  assert items[0].attempt_count == 1
  assert "Internal error" in (items[0].error_message or "")
  assert llm.requests == []


@pytest.mark.anyio
async def test_artifact_write_failure_fails_job_and_still_counts_tokens(registry, repo_store, artifacts, usage_log, make_llm, make_worker, seed_job, monkeypatch) -> None:
  from doctools.core.errors import StorageError

  write_item = artifacts.write_item

  async def flaky_write_item(module_key, job_id, round_number, ordinal, filename, content):  # type: ignore[no-untyped-def]
    if ordinal == 1:
      raise StorageError("disk full")
    return await write_item(module_key, job_id, round_number, ordinal, filename, content)

  monkeypatch.setattr(artifacts, "write_item", flaky_write_item)
  handler = registry.resolve("summarizer")
  job = await seed_job(handler, {"documents": [{"filename": "a.pdf", "text": "alpha"}, {"filename": "b.pdf", "text": "beta"}]})

  final = await make_worker(make_llm(lambda request: "Summary.")).run("summarizer", job.job_id)

  assert final is not None
  assert final.status == "failed"
  assert final.error_message == "Storage error: disk full"
  items = await repo_store.factory("summarizer").list_items(job.job_id)
  assert [item.status for item in items] == ["completed", "failed"]
  assert items[1].error_message == "Storage error: disk full"
  assert items[1].tokens_used == 10
  # Both model calls are counted; only the stored item is charged a unit.
  assert final.total_tokens == 20
  assert usage_log.tokens() == 20
  assert usage_log.units("summarizer") == 1


@pytest.mark.anyio
async def test_crashed_job_leaves_no_item_in_flight(registry, repo_store, make_llm, make_worker, seed_job, monkeypatch) -> None:
  from doctools.jobs.progress import JobProgressTracker

  round_started = JobProgressTracker.round_started

  async def failing_round_started(self, round_number, item_count):  # type: ignore[no-untyped-def]
    if round_number == 2:
      raise RuntimeError("progress store offline")
    await round_started(self, round_number, item_count)

  monkeypatch.setattr(JobProgressTracker, "round_started", failing_round_started)
  handler = registry.resolve("reviewer")
  job = await seed_job(handler, {"documents": [{"filename": "manuscript.pdf", "text": "Full manuscript."}]})

  final = await make_worker(make_llm(lambda request: "A review.")).run("reviewer", job.job_id)

  assert final is not None
  assert final.status == "failed"
  assert final.error_message == "Internal error: progress store offline"
  items = await repo_store.factory("reviewer").list_items(job.job_id)
  round_two = [item for item in items if item.round == 2]
  assert len(round_two) == 1
  assert round_two[0].status == "failed"
  assert round_two[0].error_message == "Internal error: progress store offline"
  assert all(item.status in ("completed", "failed") for item in items)


@pytest.mark.anyio
async def test_fail_unfinished_items_closes_pending_and_processing(repo_store, registry, seed_job) -> None:
  from doctools.jobs.worker import fail_unfinished_items

  repo = repo_store.factory("summarizer")
  job = await seed_job(registry.resolve("summarizer"), {"documents": [{"filename": f"{name}.pdf", "text": name} for name in ("a", "b", "c")]})
  await repo.start_item(job.job_id, 1, 0)
  await repo.finish_item(job.job_id, 1, 0, status="completed", attempt_count=1, output_text="done")
  await repo.start_item(job.job_id, 1, 1)
  await repo.record_item_attempt(job.job_id, 1, 1, attempt_count=2, error_message="timeout")

  closed = await fail_unfinished_items(repo, job.job_id, "Internal error: boom")

  assert closed == 2
  items = await repo.list_items(job.job_id)
  assert [(item.status, item.error_message) for item in items] == [("completed", None), ("failed", "timeout"), ("failed", "Internal error: boom")]
  assert items[1].attempt_count == 2


def _reference_loader(reference: dict):  # type: ignore[no-untyped-def]
  from dataclasses import replace

  from doctools.jobs.worker import default_settings_loader

  async def _load(handler):  # type: ignore[no-untyped-def]
    settings = await default_settings_loader(handler)
    return replace(settings, reference={name: reference[name] for name in handler.reference_data if name in reference})

  return _load


def _journal_catalog():  # type: ignore[no-untyped-def]
  from doctools.modules.journals import JournalCatalog, JournalEntry

  return JournalCatalog(
    topics=("Oncology", "Genomics"),
    journals=(
      JournalEntry(name="Applied Oncology", low_bound=25.0, reference_mark="Q2", topic_scores={"oncology": 3}),
      JournalEntry(name="Elite Oncology", low_bound=40.0, reference_mark="Q1", topic_scores={"oncology": 3}),
      JournalEntry(name="Genome Letters", low_bound=10.0, topic_scores={"genomics": 1}),
    ),
  )


@pytest.mark.anyio
async def test_grader_recommends_journals_from_selected_keywords(registry, repo_store, artifacts, usage_log, make_llm, seed_job) -> None:
  from doctools.jobs.worker import JobWorker

  def responder(request: LlmRequest):
    if _user_text(request).startswith("Manuscript content (first"):
      return '{"main_keyword": "Oncology", "peripheral_keywords": ["Genomics"]}'
    return GRADING_REPLY

  llm = make_llm(responder)
  worker = JobWorker(registry=registry, repo_factory=repo_store.factory, llm=llm, artifacts=artifacts, usage_recorder=usage_log, settings_loader=_reference_loader({"journals": _journal_catalog()}))
  job = await seed_job(registry.resolve("grader"), {"documents": [{"filename": "paper.pdf", "text": "Tumour genomics manuscript."}]})

  final = await worker.run("grader", job.job_id)

  assert final is not None
  assert final.status == "completed"
  assert final.result is not None
  assert final.result["keyword_main"] == "Oncology"
  assert final.result["keyword_peripherals"] == ["Genomics"]
  assert [entry["journal_name"] for entry in final.result["recommendations"]] == ["Applied Oncology"]
  assert final.result["recommendations"][0]["adjusted_threshold"] == pytest.approx(22.5)
  keyword_request = llm.requests[-1]
  assert "Oncology, Genomics" in keyword_request.messages[0].text
  assert len(llm.requests) == 13
  # Keyword selection tokens are part of the job total.
  assert final.total_tokens == 130
  assert usage_log.units("grader") == 1


@pytest.mark.anyio
async def test_grader_keeps_grade_when_keyword_selection_fails(registry, repo_store, artifacts, usage_log, make_llm, seed_job) -> None:
  from doctools.jobs.worker import JobWorker

  def responder(request: LlmRequest):
    if _user_text(request).startswith("Manuscript content (first"):
      return ProviderError("keyword model down")
    return GRADING_REPLY

  worker = JobWorker(registry=registry, repo_factory=repo_store.factory, llm=make_llm(responder), artifacts=artifacts, usage_recorder=usage_log, settings_loader=_reference_loader({"journals": _journal_catalog()}))
  job = await seed_job(registry.resolve("grader"), {"documents": [{"filename": "paper.pdf", "text": "Manuscript body."}]})

  final = await worker.run("grader", job.job_id)

  assert final is not None
  assert final.status == "completed"
  assert final.result is not None
  assert final.result["iqm_score"] == pytest.approx(26.0)
  assert final.result["keyword_main"] is None
  assert final.result["recommendations"] == []
  assert final.total_tokens == 120


@pytest.mark.anyio
async def test_summarizer_translation_uses_shared_glossary_with_job_overrides(registry, repo_store, artifacts, usage_log, make_llm, seed_job) -> None:
  from doctools.jobs.worker import JobWorker

  llm = make_llm(lambda request: "Summary text.")
  shared = [{"source": "cell", "target": "单元"}, {"source": "membrane", "target": "膜"}]
  worker = JobWorker(registry=registry, repo_factory=repo_store.factory, llm=llm, artifacts=artifacts, usage_recorder=usage_log, settings_loader=_reference_loader({"glossary": shared}))
  job = await seed_job(registry.resolve("summarizer"), {"documents": [{"filename": "paper.pdf", "text": "content"}], "translate": True, "glossary": [{"source": "Cell", "target": "细胞"}]})

  final = await worker.run("summarizer", job.job_id)

  assert final is not None
  assert final.status == "completed"
  system_prompt = llm.requests[1].messages[0].text
  assert "- EN: Cell -> CN: 细胞" in system_prompt
  assert "- EN: membrane -> CN: 膜" in system_prompt
  assert "单元" not in system_prompt
