"""Paragraph-preserving translation of DOCX manuscripts.

Each document is split into chunks of at most CHUNK_MAX_PARAGRAPHS paragraphs
and CHUNK_MAX_WORDS equivalent words; a blank paragraph always closes the
current chunk. Every chunk is one job item, and the model must return the
same number of separator-delimited segments it was given.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from doctools.core.errors import ParseError, ValidationFailedError
from doctools.jobs.models import JobItemRecord, JobRecord
from doctools.jobs.policy import ModulePolicy, linear_delay, require_all
from doctools.jobs.registry import ItemContext, ItemOutput, JobAssembly
from doctools.modules.base import BaseModuleHandler, estimate_text_tokens, file_stem, response_tokens
from doctools.modules.glossary import apply_glossary, merge_glossaries, normalize_glossary, render_glossary

logger = logging.getLogger(__name__)

PARAGRAPH_SEPARATOR = "[[__PARAGRAPH_BREAK__]]"
CHUNK_MAX_PARAGRAPHS = 20
CHUNK_MAX_WORDS = 700.0
CJK_WORD_WEIGHT = 0.7

DIRECTIONS = {"en_to_cn": "EN -> CN", "cn_to_en": "CN -> EN"}

EN_TO_CN_PROMPT = """You are an expert translator for academic manuscripts from English (EN) to Chinese (CN). Maintain formal academic tone and style in CN.
Use the glossary consistently; each entry is EN -> CN:
{{GLOSSARY}}
The user's input contains multiple paragraphs separated by the exact marker {{PARAGRAPH_SEPARATOR}}. Return the translated paragraphs with the same marker preserved between them.
If a paragraph is only a URL or citation, return it unchanged."""

CN_TO_EN_PROMPT = """You are an expert translator for academic manuscripts from Chinese (CN) to English (EN). Maintain formal academic tone and style in EN (British academic English preferred).
Use the glossary consistently; each entry is CN -> EN:
{{GLOSSARY}}
The user's input contains multiple paragraphs separated by the exact marker {{PARAGRAPH_SEPARATOR}}. Return the translated paragraphs with the same marker preserved between them.
If a paragraph is only a URL or citation, return it unchanged."""


def equivalent_words(text: str) -> float:
  """Count words, weighting each CJK ideograph as CJK_WORD_WEIGHT of a word."""
  count = 0.0
  in_word = False
  for char in text:
    if char.isspace():
      if in_word:
        count += 1.0
        in_word = False
    elif "\u4e00" <= char <= "\u9fff":
      if in_word:
        count += 1.0
        in_word = False
      count += CJK_WORD_WEIGHT
    else:
      in_word = True
  if in_word:
    count += 1.0
  return count


def plan_chunks(paragraphs: list[str]) -> list[list[int]]:
  """Group paragraph indices into translation chunks."""
  chunks: list[list[int]] = []
  current: list[int] = []
  words = 0.0
  for index, paragraph in enumerate(paragraphs):
    text = paragraph.strip()
    if not text:
      if current:
        chunks.append(current)
        current, words = [], 0.0
      continue
    paragraph_words = equivalent_words(text)
    if current and (len(current) >= CHUNK_MAX_PARAGRAPHS or words + paragraph_words > CHUNK_MAX_WORDS):
      chunks.append(current)
      current, words = [], 0.0
    current.append(index)
    words += paragraph_words
  if current:
    chunks.append(current)
  return chunks


def split_translation(translated: str, expected: int) -> list[str]:
  parts = [part.strip() for part in translated.split(PARAGRAPH_SEPARATOR)]
  if len(parts) != expected:
    raise ParseError(f"Translation returned {len(parts)} segment(s) but {expected} were expected")
  return parts


class TranslateDocxHandler(BaseModuleHandler):
  key = "translatedocx"
  title = "DOCX Translator"
  policy = ModulePolicy(attempt_cap=3, concurrency_cap=3, retry_delay=linear_delay(1.5), thresholds={1: require_all()}, units_per_job=1)
  default_models = {"translation_model": "openrouter/openai/gpt-4o-mini"}
  default_prompts = {"en_to_cn": EN_TO_CN_PROMPT, "cn_to_en": CN_TO_EN_PROMPT}
  reference_data = ("glossary",)
  max_documents = 10

  def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(payload, dict):
      raise ValidationFailedError("Payload must be an object")
    raw = payload.get("documents")
    if not isinstance(raw, list) or not raw:
      raise ValidationFailedError("At least one document is required")
    if len(raw) > self.max_documents:
      raise ValidationFailedError(f"At most {self.max_documents} document(s) may be submitted")

    documents: list[dict[str, Any]] = []
    for index, entry in enumerate(raw, start=1):
      if not isinstance(entry, dict):
        raise ValidationFailedError(f"Document {index} must be an object")
      filename = str(entry.get("filename") or f"document_{index}.docx").strip()
      paragraphs = entry.get("paragraphs")
      if paragraphs is None and isinstance(entry.get("text"), str):
        paragraphs = entry["text"].split("\n")
      if not isinstance(paragraphs, list) or not all(isinstance(paragraph, str) for paragraph in paragraphs):
        raise ValidationFailedError(f"Document '{filename}' must provide paragraphs as a list of strings")
      if not plan_chunks(paragraphs):
        raise ValidationFailedError(f"Document '{filename}' has no translatable content")
      documents.append({"filename": filename, "paragraphs": paragraphs})

    direction = str(payload.get("direction") or "en_to_cn").strip().lower()
    if direction not in DIRECTIONS:
      raise ValidationFailedError(f"direction must be one of: {', '.join(DIRECTIONS)}")
    return {"documents": documents, "direction": direction, "glossary": normalize_glossary(payload.get("glossary"))}

  def build_items(self, job_id: str, payload: dict[str, Any]) -> list[JobItemRecord]:
    items: list[JobItemRecord] = []
    for document_index, document in enumerate(payload["documents"]):
      chunks = plan_chunks(document["paragraphs"])
      for chunk_index, indices in enumerate(chunks):
        label = f"{document['filename']} chunk {chunk_index + 1}/{len(chunks)}"
        items.append(JobItemRecord(job_id=job_id, round=1, ordinal=len(items), label=label, input={"document_index": document_index, "chunk_index": chunk_index, "paragraph_indices": indices}))
    return items

  def estimate_tokens(self, payload: dict[str, Any]) -> int:
    text = "\n".join(paragraph for document in payload.get("documents", []) for paragraph in document["paragraphs"])
    # Prompt plus a translation of similar length.
    return estimate_text_tokens(text) * 2

  def _system_prompt(self, ctx: ItemContext) -> str:
    direction = ctx.job.payload.get("direction", "en_to_cn")
    terms = merge_glossaries(ctx.settings.reference.get("glossary") or [], ctx.job.payload.get("glossary") or [])
    glossary = render_glossary(terms, reverse=direction == "cn_to_en", empty="No glossary entries configured.")
    return apply_glossary(ctx.settings.prompt(direction), glossary).replace("{{PARAGRAPH_SEPARATOR}}", PARAGRAPH_SEPARATOR)

  async def run_item(self, ctx: ItemContext, item: JobItemRecord) -> ItemOutput:
    document = self.document_for(ctx.job, item)
    indices: list[int] = list(item.input["paragraph_indices"])
    source = PARAGRAPH_SEPARATOR.join(document["paragraphs"][index].strip() for index in indices)
    direction = ctx.job.payload.get("direction", "en_to_cn")
    source_label, target_label = DIRECTIONS[direction].split(" -> ")
    instruction = (
      f"Translate the following {source_label} paragraphs into {target_label}. CRITICAL: You must preserve EXACTLY {len(indices) - 1} occurrences of the separator "
      f"{PARAGRAPH_SEPARATOR} in your output. Each separator marks a paragraph boundary and must appear in the same positions in your translation.\n\nInput text:\n{source}"
    )

    await ctx.progress.set_detail(f"Translating {item.label} ({DIRECTIONS[direction]})")
    response = await ctx.llm.execute(self.chat_request(ctx.settings.model("translation_model"), self._system_prompt(ctx), instruction))
    parts = split_translation(response.text.strip(), len(indices))
    return ItemOutput(text=json.dumps(parts, ensure_ascii=False), tokens=response_tokens(response))

  def assemble(self, job: JobRecord, items: list[JobItemRecord]) -> JobAssembly:
    translated = [list(document["paragraphs"]) for document in job.payload["documents"]]
    chunk_counts = [0] * len(translated)
    for item in self.succeeded_items(items):
      document_index = int(item.input["document_index"])
      try:
        parts = json.loads(item.output_text or "")
      except json.JSONDecodeError as exc:
        raise ParseError(f"Stored translation for {item.label} is unreadable") from exc
      for paragraph_index, text in zip(item.input["paragraph_indices"], parts, strict=True):
        translated[document_index][paragraph_index] = text
      chunk_counts[document_index] += 1

    sections: list[str] = []
    documents: list[dict[str, Any]] = []
    for document, paragraphs, chunks in zip(job.payload["documents"], translated, chunk_counts, strict=True):
      sections.append(f"# {file_stem(document['filename'])}_translated\n\n" + "\n".join(paragraphs) + "\n")
      documents.append({"filename": document["filename"], "paragraphs": len(paragraphs), "chunks": chunks})
    result = {"direction": job.payload.get("direction"), "documents": documents}
    return JobAssembly(result=result, artifact_name="translation.txt", artifact_content="\n".join(sections))
