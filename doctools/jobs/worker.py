"""Retry-bounded background processor for admitted document-tool jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from doctools.ai.client import LlmClient
from doctools.core.errors import ParseError, StorageError
from doctools.jobs.models import JobItemRecord, JobRecord, is_terminal
from doctools.jobs.policy import ModulePolicy, derive_job_status, round_outcome
from doctools.jobs.progress import JobProgressTracker
from doctools.jobs.registry import ItemContext, ModuleHandler, ModuleRegistry, ModuleSettings
from doctools.jobs.retry import run_with_retry
from doctools.storage.artifacts import ArtifactStore
from doctools.storage.jobs_repo import JobsRepository, JobsRepositoryFactory

logger = logging.getLogger(__name__)

UsageRecorder = Callable[[str, str, int, int], Awaitable[None]]
SettingsLoader = Callable[[ModuleHandler], Awaitable[ModuleSettings]]

MAX_SUMMARY_ERRORS = 5


async def default_settings_loader(handler: ModuleHandler) -> ModuleSettings:
  return ModuleSettings(models=dict(handler.default_models), prompts=dict(handler.default_prompts))


def item_errors(items: list[JobItemRecord]) -> list[dict[str, Any]]:
  """Structured per-item failures for partial results."""
  return [{"round": item.round, "ordinal": item.ordinal, "label": item.label, "error": item.error_message or "failed"} for item in items if item.status == "failed"]


def failure_summary(items: list[JobItemRecord], policy: ModulePolicy) -> str:
  """Aggregate error text for a failed job."""
  if not items:
    return "No work items were produced."
  rounds: dict[int, list[JobItemRecord]] = {}
  for item in items:
    rounds.setdefault(item.round, []).append(item)
  parts: list[str] = []
  for round_number in sorted(rounds):
    round_items = rounds[round_number]
    threshold = policy.threshold_for(round_number)
    if round_outcome(round_items, threshold):
      continue
    succeeded = sum(1 for item in round_items if item.succeeded)
    parts.append(f"Round {round_number}: {succeeded} of {len(round_items)} item(s) succeeded (needs {threshold.describe(len(round_items))})")
  errors = item_errors(items)[:MAX_SUMMARY_ERRORS]
  if errors:
    parts.append("; ".join(f"{error['label']}: {error['error']}" for error in errors))
  return ". ".join(parts) or "Job failed."


async def fail_unfinished_items(repo: JobsRepository, job_id: str, message: str) -> int:
  """Close out items a failed job left pending or processing."""
  closed = 0
  for item in await repo.list_items(job_id):
    if is_terminal(item.status):
      continue
    await repo.finish_item(job_id, item.round, item.ordinal, status="failed", attempt_count=item.attempt_count, status_detail="Failed", error_message=item.error_message or message, tokens_used=item.tokens_used)
    closed += 1
  return closed


class JobWorker:
  """Run one job to a terminal state; nothing raised inside escapes `run`."""

  def __init__(
    self,
    *,
    registry: ModuleRegistry,
    repo_factory: JobsRepositoryFactory,
    llm: LlmClient,
    artifacts: ArtifactStore,
    usage_recorder: UsageRecorder,
    settings_loader: SettingsLoader = default_settings_loader,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._registry = registry
    self._repo_factory = repo_factory
    self._llm = llm
    self._artifacts = artifacts
    self._usage_recorder = usage_recorder
    self._settings_loader = settings_loader
    self._sleep = sleep

  async def run(self, module_key: str, job_id: str) -> JobRecord | None:
    """Claim and execute a job, returning its final record."""
    handler = self._registry.resolve(module_key)
    repo = self._repo_factory(module_key)
    job = await repo.claim_job(job_id)
    if job is None:
      logger.info("Job not claimable module=%s job_id=%s", module_key, job_id)
      return await repo.get_job(job_id)

    logger.info("Job started module=%s job_id=%s", module_key, job_id)
    try:
      await self._execute(handler, repo, job)
    except Exception as exc:  # noqa: BLE001
      logger.error("Job crashed module=%s job_id=%s", module_key, job_id, exc_info=True)
      await fail_unfinished_items(repo, job_id, f"Internal error: {exc}")
      await repo.finish_job(job_id, status="failed", status_detail="Failed", error_message=f"Internal error: {exc}")
    return await repo.get_job(job_id)

  async def _execute(self, handler: ModuleHandler, repo: JobsRepository, job: JobRecord) -> None:
    policy = handler.policy
    tracker = JobProgressTracker(job_id=job.job_id, jobs_repo=repo)
    settings = await self._settings_loader(handler)
    ctx = ItemContext(job=job, settings=settings, llm=self._llm, progress=tracker, sleep=self._sleep)

    pending = await repo.list_items(job.job_id, round_number=1)
    finished: list[JobItemRecord] = []
    round_number = 1
    try:
      while pending:
        await tracker.round_started(round_number, len(pending))
        round_items = await self._run_round(handler, repo, ctx, pending)
        finished.extend(round_items)
        if not round_outcome(round_items, policy.threshold_for(round_number)):
          break
        pending = handler.next_round(job, round_number, finished)
        if pending:
          round_number += 1
          await repo.add_items(pending)
    except StorageError as exc:
      logger.error("Artifact write failed module=%s job_id=%s error=%s", job.module_key, job.job_id, exc)
      await fail_unfinished_items(repo, job.job_id, f"Storage error: {exc}")
      await repo.finish_job(job.job_id, status="failed", status_detail="Failed", error_message=f"Storage error: {exc}")
      return

    status = derive_job_status(finished, policy)
    if status == "failed":
      summary = failure_summary(finished, policy)
      logger.warning("Job failed module=%s job_id=%s reason=%s", job.module_key, job.job_id, summary)
      await repo.finish_job(job.job_id, status="failed", status_detail="Failed", error_message=summary, result={"item_errors": item_errors(finished)})
      return

    await self._complete(handler, repo, job, finished)

  async def _complete(self, handler: ModuleHandler, repo: JobsRepository, job: JobRecord, items: list[JobItemRecord]) -> None:
    policy = handler.policy
    try:
      assembly = handler.assemble(job, items)
      result_path = None
      if assembly.artifact_name and assembly.artifact_content is not None:
        result_path = await self._artifacts.write_aggregate(job.module_key, job.job_id, assembly.artifact_name, assembly.artifact_content)
    except (ParseError, StorageError) as exc:
      logger.error("Result assembly failed module=%s job_id=%s error=%s", job.module_key, job.job_id, exc)
      await repo.finish_job(job.job_id, status="failed", status_detail="Failed", error_message=str(exc), result={"item_errors": item_errors(items)})
      return

    result = dict(assembly.result)
    errors = item_errors(items)
    if errors:
      result["item_errors"] = errors
    if policy.units_per_job:
      await repo.add_usage(job.job_id, units=policy.units_per_job, tokens=0)
      await self._usage_recorder(job.user_id, job.module_key, 0, policy.units_per_job)

    detail = "Completed" if not errors else f"Completed with {len(errors)} failed item(s)"
    await repo.finish_job(job.job_id, status="completed", status_detail=detail, result=result, result_path=result_path)
    logger.info("Job completed module=%s job_id=%s item_errors=%d", job.module_key, job.job_id, len(errors))

  async def _run_round(self, handler: ModuleHandler, repo: JobsRepository, ctx: ItemContext, items: list[JobItemRecord]) -> list[JobItemRecord]:
    semaphore = asyncio.Semaphore(handler.policy.concurrency_cap)
    done = 0

    async def guarded(item: JobItemRecord) -> JobItemRecord:
      nonlocal done
      async with semaphore:
        record = await self._run_item(handler, repo, ctx, item)
      done += 1
      await ctx.progress.item_finished(item.round, done, len(items))
      return record

    # Barrier: every item of the round settles before the outcome is evaluated.
    results = await asyncio.gather(*(guarded(item) for item in items), return_exceptions=True)
    finished: list[JobItemRecord] = []
    storage_error: StorageError | None = None
    for item, result in zip(items, results, strict=True):
      if isinstance(result, StorageError):
        storage_error = storage_error or result
        finished.append(replace(item, status="failed", error_message=str(result)))
      elif isinstance(result, BaseException):
        raise result
      else:
        finished.append(result)
    if storage_error is not None:
      raise storage_error
    return finished

  async def _run_item(self, handler: ModuleHandler, repo: JobsRepository, ctx: ItemContext, item: JobItemRecord) -> JobItemRecord:
    job = ctx.job
    policy = handler.policy
    await repo.start_item(job.job_id, item.round, item.ordinal, status_detail="Processing")

    async def attempt(_attempt: int):  # type: ignore[no-untyped-def]
      return await handler.run_item(ctx, item)

    async def on_failed(attempt_number: int, exc: BaseException) -> None:
      await repo.record_item_attempt(job.job_id, item.round, item.ordinal, attempt_count=attempt_number, error_message=str(exc))

    try:
      outcome = await run_with_retry(attempt, max_attempts=policy.attempt_cap, delay=policy.retry_delay, label=f"{job.module_key}:{job.job_id}:{item.round}.{item.ordinal}", on_attempt_failed=on_failed, sleep=ctx.sleep)
    except Exception as exc:  # noqa: BLE001
      # Unexpected handler errors fail the item instead of the whole round.
      logger.error("Item crashed module=%s job_id=%s item=%s.%s", job.module_key, job.job_id, item.round, item.ordinal, exc_info=True)
      message = f"Internal error: {exc}"
      await repo.finish_item(job.job_id, item.round, item.ordinal, status="failed", attempt_count=1, status_detail="Failed", error_message=message)
      return replace(item, status="failed", attempt_count=1, error_message=message)

    if not outcome.ok or outcome.value is None:
      message = str(outcome.error) if outcome.error else "failed"
      await repo.finish_item(job.job_id, item.round, item.ordinal, status="failed", attempt_count=outcome.attempts, status_detail="Failed", error_message=message)
      return replace(item, status="failed", attempt_count=outcome.attempts, error_message=message)

    output = outcome.value
    output_path = None
    tokens = max(int(output.tokens), 0)
    if output.artifact_name and output.artifact_content is not None:
      try:
        output_path = await self._artifacts.write_item(job.module_key, job.job_id, item.round, item.ordinal, output.artifact_name, output.artifact_content)
      except StorageError as exc:
        # Tokens were spent even though the artifact is lost.
        message = f"Storage error: {exc}"
        await repo.finish_item(job.job_id, item.round, item.ordinal, status="failed", attempt_count=outcome.attempts, status_detail="Failed", error_message=message, tokens_used=tokens)
        await repo.add_usage(job.job_id, units=0, tokens=tokens)
        await self._usage_recorder(job.user_id, job.module_key, tokens, 0)
        raise
    await repo.finish_item(job.job_id, item.round, item.ordinal, status="completed", attempt_count=outcome.attempts, status_detail="Completed", output_text=output.text, output_path=output_path, tokens_used=tokens)
    await repo.add_usage(job.job_id, units=policy.units_per_item, tokens=tokens)
    await self._usage_recorder(job.user_id, job.module_key, tokens, policy.units_per_item)
    return replace(item, status="completed", attempt_count=outcome.attempts, output_text=output.text, output_path=output_path, tokens_used=tokens)
