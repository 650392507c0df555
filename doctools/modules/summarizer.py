"""Per-document summaries with optional English-to-Chinese translation.

Every document is one item that is charged one unit when it succeeds. The
job succeeds only when all documents do; a failed translation is recorded on
the document but does not fail its item.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from doctools.core.errors import ParseError, ProviderError, ValidationFailedError
from doctools.jobs.models import JobItemRecord, JobRecord
from doctools.jobs.policy import ModulePolicy, linear_delay, require_all
from doctools.jobs.registry import ItemContext, ItemOutput, JobAssembly
from doctools.modules.base import BaseModuleHandler, file_stem, response_tokens
from doctools.modules.glossary import apply_glossary, merge_glossaries, normalize_glossary, render_glossary

logger = logging.getLogger(__name__)

DOCUMENT_KINDS = ("research", "general")

RESEARCH_SUMMARY_PROMPT = """You are an academic assistant. Write a detailed summary of the following research paper text of roughly 800 words covering:
1. Research Question/Objective (~75 words).
2. Methodology: methods, data collection, analysis techniques, tools and sample information (~400 words), with specific quantitative details where available.
3. Findings/Results: key findings, significant data points and statistical outcomes (~400 words).
4. Discussion/Conclusion: implications and the main conclusion (~75 words).
Do not use markdown formatting. Report only what the provided text supports."""

GENERAL_SUMMARY_PROMPT = """You are an assistant tasked with summarizing documents. Provide a concise yet comprehensive summary of the following text of roughly 600 words.
Highlight the main points, key arguments, significant figures and any conclusions drawn. Structure the summary logically.
Do not use markdown formatting. Base the summary only on the provided text."""

TRANSLATION_PROMPT = """You are an expert translator for academic manuscripts from English (EN) to Chinese (CN). Maintain academic tone and style.
Use the following EN -> CN glossary entries for consistent terminology:
{{GLOSSARY}}
Preserve citations, references, and technical terms."""


def format_heading(index: int, filename: str) -> str:
  return f"Document {index + 1}: {filename}"


class SummarizerHandler(BaseModuleHandler):
  """Summarize each document, optionally translating the summary into Chinese."""

  key = "summarizer"
  title = "Summarizer"
  policy = ModulePolicy(attempt_cap=3, concurrency_cap=5, retry_delay=linear_delay(1.0), thresholds={1: require_all()}, units_per_item=1)
  default_models = {"summary_model": "openrouter/anthropic/claude-3-haiku", "translation_model": "openrouter/openai/gpt-4o-mini"}
  default_prompts = {"research_summary": RESEARCH_SUMMARY_PROMPT, "general_summary": GENERAL_SUMMARY_PROMPT, "translation": TRANSLATION_PROMPT}
  reference_data = ("glossary",)

  def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
    normalized = super().validate_payload(payload)
    kind = str(payload.get("document_kind") or "general").strip().lower()
    if kind not in DOCUMENT_KINDS:
      raise ValidationFailedError(f"document_kind must be one of: {', '.join(DOCUMENT_KINDS)}")
    normalized["document_kind"] = kind
    normalized["translate"] = bool(payload.get("translate", False))
    normalized["glossary"] = normalize_glossary(payload.get("glossary"))
    return normalized

  def estimate_tokens(self, payload: dict[str, Any]) -> int:
    base = super().estimate_tokens(payload)
    # The translation call only sees the summary, so it adds a fraction of the input.
    return base + base // 4 if payload.get("translate") else base

  async def run_item(self, ctx: ItemContext, item: JobItemRecord) -> ItemOutput:
    job = ctx.job
    document = self.document_for(job, item)
    prompt_key = "research_summary" if job.payload.get("document_kind") == "research" else "general_summary"

    await ctx.progress.set_detail(f"Summarizing {document['filename']}")
    summary_response = await ctx.llm.execute(self.chat_request(ctx.settings.model("summary_model"), ctx.settings.prompt(prompt_key), document["text"]))
    summary = summary_response.text.strip()
    if not summary:
      raise ParseError(f"Empty summary for {document['filename']}")
    tokens = response_tokens(summary_response)

    translation: str | None = None
    translation_error: str | None = None
    if job.payload.get("translate"):
      await ctx.progress.set_detail(f"Translating {document['filename']}")
      terms = merge_glossaries(ctx.settings.reference.get("glossary") or [], job.payload.get("glossary") or [])
      system_prompt = apply_glossary(ctx.settings.prompt("translation"), render_glossary(terms))
      request = self.chat_request(ctx.settings.model("translation_model"), system_prompt, f"Translate the following text to Chinese while adhering to the glossary:\n\n{summary}")
      try:
        translation_response = await ctx.llm.execute(request)
      except ProviderError as exc:
        # The summary stands on its own; a failed translation is reported, not retried.
        logger.warning("Translation failed job_id=%s document=%s error=%s", job.job_id, document["filename"], exc)
        translation_error = str(exc)
      else:
        translation = translation_response.text.strip() or None
        tokens += response_tokens(translation_response)
        if translation is None:
          translation_error = "Translation response was empty"

    body = summary if translation is None else f"{summary}\n\n--- Translation ---\n\n{translation}"
    output = {"summary": summary, "translation": translation, "translation_error": translation_error}
    return ItemOutput(text=json.dumps(output, ensure_ascii=False), tokens=tokens, artifact_name=f"{file_stem(document['filename'])}_summary.txt", artifact_content=body)

  def assemble(self, job: JobRecord, items: list[JobItemRecord]) -> JobAssembly:
    sections: list[str] = []
    documents: list[dict[str, Any]] = []
    for item in self.succeeded_items(items):
      try:
        output = json.loads(item.output_text or "")
      except json.JSONDecodeError as exc:
        raise ParseError(f"Stored summary for {item.label} is unreadable") from exc
      heading = format_heading(item.ordinal, item.label)
      sections.append(f"# {heading}\n\n{output['summary']}\n")
      if output.get("translation"):
        sections.append(f"# {heading} (translation)\n\n{output['translation']}\n")
      documents.append({"filename": item.label, "translated": bool(output.get("translation")), "translation_error": output.get("translation_error")})
    result = {"document_kind": job.payload.get("document_kind"), "translate": bool(job.payload.get("translate")), "documents": documents}
    return JobAssembly(result=result, artifact_name="summaries.txt", artifact_content="\n".join(sections))
