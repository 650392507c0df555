"""Structured field extraction from papers into one CSV.

Each document is one item. The job completes when at least one document
yields a parseable JSON row; failed documents are listed in item_errors.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from typing import Any

from doctools.ai.json_parser import parse_json_object
from doctools.core.errors import ParseError, ValidationFailedError
from doctools.jobs.models import JobItemRecord, JobRecord
from doctools.jobs.policy import ModulePolicy, at_least_one, linear_delay
from doctools.jobs.registry import ItemContext, ItemOutput, JobAssembly
from doctools.modules.base import BaseModuleHandler, response_tokens

logger = logging.getLogger(__name__)

MAX_DOCUMENTS = 100
MAX_FIELDS = 50
MAX_DOCUMENT_TEXT_CHARS = 20_000

SYSTEM_PROMPT = "You extract structured information from academic papers. Answer only from the provided text and respond with a single JSON object keyed by the requested field names."
RESPONSE_GUIDANCE = "Return a JSON object whose keys are exactly the field names above. Use an empty string when a field cannot be determined. When allowed values are listed, answer with one of them."


def _string_list(raw: Any) -> list[str]:
  if raw in (None, ""):
    return []
  if isinstance(raw, str):
    raw = raw.split(";")
  if not isinstance(raw, list):
    raise ValidationFailedError("Field examples and allowed values must be lists or ';'-separated strings")
  return [str(value).strip() for value in raw if str(value).strip()]


def normalize_fields(raw: Any) -> list[dict[str, Any]]:
  """Validate extraction field definitions.

  Each field needs a description, examples or allowed values; examples and
  allowed values are mutually exclusive.
  """
  if not isinstance(raw, list) or not raw:
    raise ValidationFailedError("At least one extraction field is required")
  if len(raw) > MAX_FIELDS:
    raise ValidationFailedError(f"At most {MAX_FIELDS} extraction fields are allowed")
  fields: list[dict[str, Any]] = []
  seen: set[str] = set()
  for index, entry in enumerate(raw, start=1):
    if not isinstance(entry, dict):
      raise ValidationFailedError(f"Field {index} must be an object")
    name = str(entry.get("name") or "").strip()
    if not name:
      raise ValidationFailedError(f"Field {index} needs a name")
    if name in seen:
      raise ValidationFailedError(f"Duplicate field name '{name}'")
    seen.add(name)
    description = str(entry.get("description") or "").strip() or None
    examples = _string_list(entry.get("examples"))
    allowed = _string_list(entry.get("allowed_values"))
    if description is None and not examples and not allowed:
      raise ValidationFailedError(f"Field '{name}' needs a description, examples or allowed values")
    if examples and allowed:
      raise ValidationFailedError(f"Field '{name}' may define examples or allowed values, not both")
    fields.append({"name": name, "description": description, "examples": examples, "allowed_values": allowed})
  return fields


def clamp_text(text: str) -> tuple[str, bool]:
  if len(text) <= MAX_DOCUMENT_TEXT_CHARS:
    return text, False
  return text[:MAX_DOCUMENT_TEXT_CHARS], True


def build_user_prompt(filename: str, fields: list[dict[str, Any]], guidance: str, text: str, truncated: bool) -> str:
  lines = [f"File name: {filename}", "", "Extract the following fields from the paper:"]
  for index, field in enumerate(fields, start=1):
    lines.append(f"{index}. {field['name']}")
    if field.get("description"):
      lines.append(f"   Description: {field['description']}")
    if field.get("examples"):
      lines.append(f"   Examples: {'; '.join(field['examples'])}")
    if field.get("allowed_values"):
      lines.append(f"   Allowed values: {'; '.join(field['allowed_values'])}")
  if guidance.strip():
    lines += ["", "Output requirements:", guidance.strip()]
  if truncated:
    lines += ["", f"Note: the text was truncated to its first {MAX_DOCUMENT_TEXT_CHARS} characters."]
  lines += ["", "Paper text:", "", text]
  return "\n".join(lines)


def value_to_string(value: Any) -> str:
  if value is None:
    return ""
  if isinstance(value, bool):
    return "true" if value else "false"
  if isinstance(value, list):
    return "; ".join(part for part in (value_to_string(entry) for entry in value) if part)
  if isinstance(value, dict):
    return json.dumps(value, ensure_ascii=False)
  return str(value)


class InfoExtractHandler(BaseModuleHandler):
  key = "info_extract"
  title = "Information Extraction"
  policy = ModulePolicy(attempt_cap=3, concurrency_cap=5, retry_delay=linear_delay(1.5), thresholds={1: at_least_one()}, units_per_item=1)
  default_models = {"extraction_model": "openrouter/openai/gpt-4o-mini"}
  default_prompts = {"system_prompt": SYSTEM_PROMPT, "response_guidance": RESPONSE_GUIDANCE}
  max_documents = MAX_DOCUMENTS

  def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
    normalized = super().validate_payload(payload)
    normalized["fields"] = normalize_fields(payload.get("fields"))
    return normalized

  def estimate_tokens(self, payload: dict[str, Any]) -> int:
    documents = payload.get("documents", [])
    clamped = sum(min(len(document["text"]), MAX_DOCUMENT_TEXT_CHARS) for document in documents)
    return clamped // 4 + len(documents)

  async def run_item(self, ctx: ItemContext, item: JobItemRecord) -> ItemOutput:
    document = self.document_for(ctx.job, item)
    fields = ctx.job.payload["fields"]
    text, truncated = clamp_text(document["text"])
    prompt = build_user_prompt(document["filename"], fields, ctx.settings.prompt("response_guidance"), text, truncated)

    await ctx.progress.set_detail(f"Extracting {document['filename']}")
    response = await ctx.llm.execute(self.chat_request(ctx.settings.model("extraction_model"), ctx.settings.prompt("system_prompt"), prompt))
    extracted = parse_json_object(response.text)
    row = {field["name"]: value_to_string(extracted.get(field["name"])) for field in fields}
    if not any(row.values()):
      raise ParseError(f"No requested field was extracted from {document['filename']}")
    return ItemOutput(text=json.dumps(row, ensure_ascii=False), tokens=response_tokens(response))

  def assemble(self, job: JobRecord, items: list[JobItemRecord]) -> JobAssembly:
    names = [field["name"] for field in job.payload["fields"]]
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["filename", *names])
    rows = 0
    for item in self.succeeded_items(items):
      try:
        row = json.loads(item.output_text or "")
      except json.JSONDecodeError as exc:
        raise ParseError(f"Stored extraction for {item.label} is unreadable") from exc
      writer.writerow([item.label, *(row.get(name, "") for name in names)])
      rows += 1
    result = {"fields": names, "rows": rows, "documents": len(job.payload["documents"])}
    return JobAssembly(result=result, artifact_name="extraction.csv", artifact_content=buffer.getvalue())
