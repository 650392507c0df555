"""Manuscript grading by repeated sampling.

One item per job: the handler samples the grading model up to MAX_SAMPLES
times, keeps responses whose six level scores are non-decreasing, and reduces
the valid runs with a weighted mean followed by an interquartile mean. When
journal topics are configured, one more call picks the manuscript's topics and
the score is matched against the journal catalog.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from doctools.ai.json_parser import parse_json_object
from doctools.core.errors import ParseError, ProviderError, ValidationFailedError
from doctools.jobs.models import JobItemRecord, JobRecord
from doctools.jobs.policy import ModulePolicy, require_all
from doctools.jobs.registry import ItemContext, ItemOutput, JobAssembly
from doctools.modules.base import BaseModuleHandler, response_tokens
from doctools.modules.journals import KEYWORD_SELECTION_PROMPT, JournalCatalog, KeywordSummary, keyword_excerpt, keyword_prompt, parse_keyword_response, recommend_journals

logger = logging.getLogger(__name__)

MAX_SAMPLES = 30
TARGET_VALID = 12
MIN_VALID = 8
SAMPLE_DELAY_SECONDS = 0.5
DOCX_PENALTY = 0.02
LEVELS = 6
WEIGHTS = (4.0, 2.0, 1.0, 1.0, 1.0, 1.0)

GRADING_PROMPT = """You evaluate academic manuscripts. Estimate the chance (in integer percentages) that the manuscript would be sent for external review at each prestige level below, from Level 1 (most selective journals) to Level 6 (broad-scope journals).
Percentages must not decrease as the prestige level decreases (Level 6 is the largest value). Consider methodological strength, novelty, relevance to readership, clarity of writing, and whether conclusions are supported by results.

Respond with a strict JSON object:
{
  "Level 1": <int>,
  "Level 2": <int>,
  "Level 3": <int>,
  "Level 4": <int>,
  "Level 5": <int>,
  "Level 6": <int>,
  "justification": "Single sentence explanation"
}
Do not include extra keys or commentary."""


@dataclass(frozen=True)
class GradingOutcome:
  per_level: list[float]
  iqm_score: float
  attempts_run: int
  valid_runs: int
  kept_runs: int
  justification: str | None
  decision_reason: str
  docx_penalty_applied: bool = False
  keyword_main: str | None = None
  keyword_peripherals: list[str] = field(default_factory=list)
  recommendations: list[dict[str, Any]] = field(default_factory=list)


def parse_grading_response(text: str) -> tuple[list[float], str | None]:
  """Extract the six level scores (clamped to 0..100) and the justification."""
  payload = parse_json_object(text)
  scores: list[float] = []
  for level in range(1, LEVELS + 1):
    raw = payload.get(f"Level {level}")
    try:
      value = float(raw)
    except (TypeError, ValueError) as exc:
      raise ParseError(f"Missing or non-numeric 'Level {level}'") from exc
    if not math.isfinite(value) or value < 0.0:
      value = 0.0
    scores.append(min(value, 100.0))
  justification = payload.get("justification")
  return scores, justification if isinstance(justification, str) and justification.strip() else None


def is_non_decreasing(values: list[float]) -> bool:
  return all(left <= right for left, right in zip(values, values[1:]))


def weighted_mean(scores: list[float]) -> float:
  return sum(score * weight for score, weight in zip(scores, WEIGHTS, strict=True)) / sum(WEIGHTS)


def interquartile_mean(values: list[float]) -> tuple[float, list[int]]:
  """Mean of the middle half, with the indices of the values kept.

  k = ceil(n / 4) values are trimmed from each end when more than 2k remain.
  """
  if not values:
    return 0.0, []
  order = sorted(range(len(values)), key=lambda index: values[index])
  k = (len(values) + 3) // 4
  kept = order[k : len(values) - k] if len(values) > 2 * k else order
  return sum(values[index] for index in kept) / len(kept), kept


def summarize_runs(runs: list[list[float]], justifications: list[str], *, attempts_run: int) -> GradingOutcome:
  weighted = [weighted_mean(run) for run in runs]
  iqm, kept = interquartile_mean(weighted)
  kept_runs = [runs[index] for index in kept]
  per_level = [sum(run[level] for run in kept_runs) / len(kept_runs) for level in range(LEVELS)]
  reason = f"Weighted scores from {len(runs)} valid run(s); interquartile mean over {len(kept_runs)} of them."
  return GradingOutcome(per_level=per_level, iqm_score=iqm, attempts_run=attempts_run, valid_runs=len(runs), kept_runs=len(kept_runs), justification=justifications[0] if justifications else None, decision_reason=reason)


def apply_docx_penalty(outcome: GradingOutcome) -> GradingOutcome:
  factor = 1.0 - DOCX_PENALTY
  return replace(outcome, per_level=[value * factor for value in outcome.per_level], iqm_score=outcome.iqm_score * factor, docx_penalty_applied=True)


class GraderHandler(BaseModuleHandler):
  key = "grader"
  title = "Manuscript Grader"
  policy = ModulePolicy(attempt_cap=1, concurrency_cap=1, thresholds={1: require_all()}, units_per_job=1)
  default_models = {"grading_model": "openrouter/openai/gpt-4o-mini", "keyword_model": "openrouter/openai/gpt-4o-mini"}
  default_prompts = {"grading_instructions": GRADING_PROMPT, "keyword_selection": KEYWORD_SELECTION_PROMPT}
  reference_data = ("journals",)
  max_documents = 1
  calls_per_document = TARGET_VALID

  def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
    normalized = super().validate_payload(payload)
    if len(normalized["documents"]) != 1:
      raise ValidationFailedError("Exactly one manuscript is required")
    return normalized

  async def run_item(self, ctx: ItemContext, item: JobItemRecord) -> ItemOutput:
    document = self.document_for(ctx.job, item)
    request = self.chat_request(ctx.settings.model("grading_model"), ctx.settings.prompt("grading_instructions"), f"Manuscript to grade:\n\n{document['text']}")

    runs: list[list[float]] = []
    justifications: list[str] = []
    tokens = 0
    attempts = 0
    while attempts < MAX_SAMPLES and len(runs) < TARGET_VALID:
      attempts += 1
      if attempts > 1:
        await ctx.sleep(SAMPLE_DELAY_SECONDS)
      try:
        response = await ctx.llm.execute(request)
        tokens += response_tokens(response)
        scores, justification = parse_grading_response(response.text)
      except (ProviderError, ParseError) as exc:
        logger.warning("Grading sample %d failed job_id=%s error=%s", attempts, ctx.job.job_id, exc)
      else:
        if is_non_decreasing(scores):
          runs.append(scores)
          if justification:
            justifications.append(justification)
        else:
          logger.info("Discarding decreasing grading sample %d job_id=%s", attempts, ctx.job.job_id)
      await ctx.progress.set_detail(f"Collected {len(runs)} valid result(s) from {attempts} attempt(s)")

    if len(runs) < MIN_VALID:
      raise ParseError(f"Only {len(runs)} valid grading result(s) from {attempts} attempt(s); at least {MIN_VALID} are required")

    outcome = summarize_runs(runs, justifications, attempts_run=attempts)
    catalog = ctx.settings.reference.get("journals") or JournalCatalog()
    keywords = KeywordSummary()
    if catalog.topics:
      await ctx.progress.set_detail("Analyzing topics and matching journals")
      keywords, keyword_tokens = await self._select_keywords(ctx, catalog, document["text"])
      tokens += keyword_tokens
    if document["filename"].lower().endswith(".docx"):
      outcome = apply_docx_penalty(outcome)
    # Recommendations compare against the penalized score.
    recommendations = recommend_journals(catalog, keywords, outcome.iqm_score)
    outcome = replace(outcome, keyword_main=keywords.main, keyword_peripherals=list(keywords.peripheral), recommendations=recommendations)
    text = json.dumps(asdict(outcome), ensure_ascii=False)
    return ItemOutput(text=text, tokens=tokens, artifact_name="grading.json", artifact_content=text)

  async def _select_keywords(self, ctx: ItemContext, catalog: JournalCatalog, text: str) -> tuple[KeywordSummary, int]:
    """Pick main and peripheral topics; a failure leaves the grade without recommendations."""
    request = self.chat_request(ctx.settings.model("keyword_model"), keyword_prompt(ctx.settings.prompt("keyword_selection"), catalog.topics), keyword_excerpt(text))
    try:
      response = await ctx.llm.execute(request)
    except ProviderError as exc:
      logger.error("Keyword selection failed job_id=%s error=%s", ctx.job.job_id, exc)
      return KeywordSummary(), 0
    tokens = response_tokens(response)
    try:
      return parse_keyword_response(response.text), tokens
    except ParseError as exc:
      logger.error("Keyword selection unreadable job_id=%s error=%s", ctx.job.job_id, exc)
      return KeywordSummary(), tokens

  def assemble(self, job: JobRecord, items: list[JobItemRecord]) -> JobAssembly:
    graded = self.succeeded_items(items)
    if not graded:
      raise ParseError("No grading outcome was produced")
    try:
      outcome = json.loads(graded[0].output_text or "")
    except json.JSONDecodeError as exc:
      raise ParseError("Stored grading outcome is unreadable") from exc
    outcome["filename"] = graded[0].label
    return JobAssembly(result=outcome, artifact_name="grading.json", artifact_content=json.dumps(outcome, ensure_ascii=False, indent=2))
