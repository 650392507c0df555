"""Shared plumbing for tool-module handlers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, ClassVar

from doctools.ai.providers.base import ChatMessage, LlmRequest, LlmResponse
from doctools.core.errors import ValidationFailedError
from doctools.jobs.models import JobItemRecord, JobRecord
from doctools.jobs.policy import ModulePolicy
from doctools.jobs.registry import ItemContext, ItemOutput, JobAssembly

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str) -> int:
  """Rough prompt-size estimate used for admission only."""
  return len(text) // CHARS_PER_TOKEN + 1


def response_tokens(response: LlmResponse) -> int:
  return max(int(response.token_usage.total_tokens), 0)


def file_stem(filename: str, *, fallback: str = "document") -> str:
  return Path(filename).stem or fallback


class BaseModuleHandler:
  """Default implementations of the handler contract.

  Payloads carry already-extracted text as
  `{"documents": [{"filename": ..., "text": ...}], ...options}`. Subclasses
  declare their policy and defaults as class attributes and implement
  `run_item` and `assemble`.
  """

  key: ClassVar[str]
  title: ClassVar[str]
  policy: ClassVar[ModulePolicy]
  default_models: ClassVar[dict[str, Any]] = {}
  default_prompts: ClassVar[dict[str, str]] = {}
  reference_data: ClassVar[tuple[str, ...]] = ()

  max_documents: ClassVar[int] = 50
  # LLM calls made per document; scales the admission token estimate.
  calls_per_document: ClassVar[int] = 1

  def _normalize_documents(self, payload: dict[str, Any]) -> list[dict[str, str]]:
    raw = payload.get("documents")
    if not isinstance(raw, list) or not raw:
      raise ValidationFailedError("At least one document is required")
    if len(raw) > self.max_documents:
      raise ValidationFailedError(f"At most {self.max_documents} document(s) may be submitted")
    documents: list[dict[str, str]] = []
    for index, entry in enumerate(raw, start=1):
      if not isinstance(entry, dict):
        raise ValidationFailedError(f"Document {index} must be an object")
      filename = str(entry.get("filename") or f"document_{index}").strip()
      text = entry.get("text")
      if not isinstance(text, str) or not text.strip():
        raise ValidationFailedError(f"Document '{filename}' has no extractable text")
      documents.append({"filename": filename, "text": text.strip()})
    return documents

  def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(payload, dict):
      raise ValidationFailedError("Payload must be an object")
    return {"documents": self._normalize_documents(payload)}

  def build_items(self, job_id: str, payload: dict[str, Any]) -> list[JobItemRecord]:
    """One first-round item per document."""
    return [JobItemRecord(job_id=job_id, round=1, ordinal=index, label=document["filename"], input={"document_index": index}) for index, document in enumerate(payload["documents"])]

  def estimate_tokens(self, payload: dict[str, Any]) -> int:
    total = sum(estimate_text_tokens(document["text"]) for document in payload.get("documents", []))
    return total * self.calls_per_document

  def next_round(self, job: JobRecord, finished_round: int, items: list[JobItemRecord]) -> list[JobItemRecord]:
    return []

  def document_for(self, job: JobRecord, item: JobItemRecord) -> dict[str, str]:
    """Resolve the payload document an item refers to."""
    return job.payload["documents"][int(item.input.get("document_index", 0))]

  @staticmethod
  def chat_request(model: str, system_prompt: str, user_text: str) -> LlmRequest:
    messages: list[ChatMessage] = []
    if system_prompt.strip():
      messages.append(ChatMessage(role="system", text=system_prompt.strip()))
    messages.append(ChatMessage(role="user", text=user_text))
    return LlmRequest(model=model, messages=messages)

  async def run_item(self, ctx: ItemContext, item: JobItemRecord) -> ItemOutput:
    raise NotImplementedError

  def assemble(self, job: JobRecord, items: list[JobItemRecord]) -> JobAssembly:
    raise NotImplementedError

  @staticmethod
  def succeeded_items(items: list[JobItemRecord], *, round_number: int = 1) -> list[JobItemRecord]:
    """Successful items of a round in ordinal order."""
    return sorted((item for item in items if item.round == round_number and item.succeeded), key=lambda item: item.ordinal)
