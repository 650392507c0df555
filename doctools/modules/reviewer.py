"""Three-round manuscript peer review.

Round 1 runs ROUND1_REVIEWERS independent reviews and needs at least
ROUND1_MIN_SUCCESSES of them. Round 2 merges the surviving reviews into a
meta review; round 3 fact-checks the meta review against the manuscript.
"""

from __future__ import annotations

import logging
from typing import Any

from doctools.core.errors import ParseError, ValidationFailedError
from doctools.jobs.models import JobItemRecord, JobRecord
from doctools.jobs.policy import ModulePolicy, at_least, linear_delay, require_all
from doctools.jobs.registry import ItemContext, ItemOutput, JobAssembly, ModuleSettings
from doctools.modules.base import BaseModuleHandler, response_tokens

logger = logging.getLogger(__name__)

ROUND1_REVIEWERS = 8
ROUND1_MIN_SUCCESSES = 4
LANGUAGES = ("english", "chinese")

INITIAL_PROMPT = """You are an experienced peer reviewer. Read the manuscript below and write a structured review covering: summary of the work, major concerns, minor concerns, assessment of methodology and statistics, and a recommendation (accept, minor revision, major revision, reject)."""
SECONDARY_PROMPT = """You are the handling editor. Below are several independent peer reviews of the same manuscript. Merge them into one coherent meta review: keep points raised by multiple reviewers, resolve contradictions, drop unsupported claims, and end with a consolidated recommendation."""
FINAL_PROMPT = """You are a meticulous fact-checker. Verify every claim in the review report below against the manuscript. Remove or correct statements the manuscript does not support and return the final, corrected review report."""

INITIAL_PROMPT_ZH = INITIAL_PROMPT + "\nWrite the review in Simplified Chinese."
SECONDARY_PROMPT_ZH = SECONDARY_PROMPT + "\nWrite the meta review in Simplified Chinese."
FINAL_PROMPT_ZH = FINAL_PROMPT + "\nWrite the final report in Simplified Chinese."

DEFAULT_ROUND1_MODELS = [
  "openrouter/anthropic/claude-3.5-sonnet",
  "openrouter/openai/gpt-4o",
  "openrouter/google/gemini-pro-1.5",
  "openrouter/meta-llama/llama-3.1-405b-instruct",
  "openrouter/mistralai/mistral-large",
  "openrouter/qwen/qwen-2.5-72b-instruct",
  "openrouter/deepseek/deepseek-chat",
  "openrouter/openai/gpt-4o-mini",
]


def round1_model(settings: ModuleSettings, reviewer_index: int) -> str:
  """Model for one round-1 reviewer; a shorter configured list is reused cyclically."""
  models = [model for model in settings.models.get("round1") or [] if isinstance(model, str) and model.strip()]
  if not models:
    raise KeyError("Model 'round1' is not configured")
  return models[reviewer_index % len(models)]


class ReviewerHandler(BaseModuleHandler):
  key = "reviewer"
  title = "Peer Reviewer"
  policy = ModulePolicy(attempt_cap=3, concurrency_cap=ROUND1_REVIEWERS, retry_delay=linear_delay(1.5), thresholds={1: at_least(ROUND1_MIN_SUCCESSES), 2: require_all(), 3: require_all()}, units_per_job=1)
  default_models = {"round1": DEFAULT_ROUND1_MODELS, "round2": "openrouter/anthropic/claude-3.5-sonnet", "round3": "openrouter/openai/gpt-4o"}
  default_prompts = {
    "initial_prompt": INITIAL_PROMPT,
    "initial_prompt_zh": INITIAL_PROMPT_ZH,
    "secondary_prompt": SECONDARY_PROMPT,
    "secondary_prompt_zh": SECONDARY_PROMPT_ZH,
    "final_prompt": FINAL_PROMPT,
    "final_prompt_zh": FINAL_PROMPT_ZH,
  }
  max_documents = 1
  calls_per_document = ROUND1_REVIEWERS + 2

  def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
    normalized = super().validate_payload(payload)
    if len(normalized["documents"]) != 1:
      raise ValidationFailedError("Exactly one manuscript is required")
    language = str(payload.get("language") or "english").strip().lower()
    if language not in LANGUAGES:
      raise ValidationFailedError(f"language must be one of: {', '.join(LANGUAGES)}")
    normalized["language"] = language
    return normalized

  def build_items(self, job_id: str, payload: dict[str, Any]) -> list[JobItemRecord]:
    return [JobItemRecord(job_id=job_id, round=1, ordinal=index, label=f"Review {index + 1}", input={"reviewer_index": index}) for index in range(ROUND1_REVIEWERS)]

  def next_round(self, job: JobRecord, finished_round: int, items: list[JobItemRecord]) -> list[JobItemRecord]:
    if finished_round == 1:
      reviews = [{"label": item.label, "text": item.output_text or ""} for item in self.succeeded_items(items, round_number=1)]
      return [JobItemRecord(job_id=job.job_id, round=2, ordinal=0, label="Meta review", input={"reviews": reviews})]
    if finished_round == 2:
      meta = self.succeeded_items(items, round_number=2)
      return [JobItemRecord(job_id=job.job_id, round=3, ordinal=0, label="Final report", input={"meta_review": meta[0].output_text or ""})]
    return []

  def _prompt(self, ctx: ItemContext, key: str) -> str:
    suffix = "_zh" if ctx.job.payload.get("language") == "chinese" else ""
    return ctx.settings.prompt(f"{key}{suffix}")

  async def run_item(self, ctx: ItemContext, item: JobItemRecord) -> ItemOutput:
    manuscript = self.document_for(ctx.job, item)["text"]
    if item.round == 1:
      model = round1_model(ctx.settings, int(item.input["reviewer_index"]))
      instructions = self._prompt(ctx, "initial_prompt")
      artifact = f"round1_review_{item.ordinal + 1}.md"
    elif item.round == 2:
      model = ctx.settings.model("round2")
      combined = "\n".join(f"=== {review['label']} ===\n\n{review['text']}\n" for review in item.input["reviews"])
      instructions = f"{self._prompt(ctx, 'secondary_prompt')}\n\n{combined}"
      artifact = "round2_meta_review.md"
    else:
      model = ctx.settings.model("round3")
      instructions = f"{self._prompt(ctx, 'final_prompt')}\n\n=== Review Report ===\n\n{item.input['meta_review']}"
      artifact = "round3_final_report.md"

    await ctx.progress.set_detail(f"Round {item.round}: {item.label} ({model})")
    response = await ctx.llm.execute(self.chat_request(model, instructions, f"Manuscript:\n\n{manuscript}"))
    text = response.text.strip()
    if not text:
      raise ParseError(f"{item.label} returned an empty review")
    return ItemOutput(text=text, tokens=response_tokens(response), artifact_name=artifact, artifact_content=text)

  def assemble(self, job: JobRecord, items: list[JobItemRecord]) -> JobAssembly:
    final = self.succeeded_items(items, round_number=3)
    meta = self.succeeded_items(items, round_number=2)
    if not final or not meta:
      raise ParseError("Review rounds did not produce a final report")
    round1 = [item for item in items if item.round == 1]
    succeeded = sum(1 for item in round1 if item.succeeded)
    report = f"# Final report\n\n{final[0].output_text}\n\n# Meta review\n\n{meta[0].output_text}\n"
    result = {"language": job.payload.get("language"), "round1_succeeded": succeeded, "round1_total": len(round1)}
    return JobAssembly(result=result, artifact_name="review_report.md", artifact_content=report)
