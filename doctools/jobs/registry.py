"""Module handler contract and the explicit registry injected at startup."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from doctools.ai.client import LlmClient
from doctools.core.errors import UnknownModuleError
from doctools.jobs.models import JobItemRecord, JobRecord
from doctools.jobs.policy import ModulePolicy
from doctools.jobs.progress import JobProgressTracker


@dataclass(frozen=True)
class ModuleSettings:
  """Model and prompt selections, plus shared reference data, resolved for one job."""

  models: dict[str, Any] = field(default_factory=dict)
  prompts: dict[str, str] = field(default_factory=dict)
  reference: dict[str, Any] = field(default_factory=dict)

  def model(self, key: str) -> str:
    value = self.models.get(key)
    if not isinstance(value, str) or not value:
      raise KeyError(f"Model '{key}' is not configured")
    return value

  def prompt(self, key: str) -> str:
    return str(self.prompts.get(key) or "")


@dataclass(frozen=True)
class ItemContext:
  """Collaborators available to a handler while it runs one item."""

  job: JobRecord
  settings: ModuleSettings
  llm: LlmClient
  progress: JobProgressTracker
  sleep: Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ItemOutput:
  """Successful result of one item attempt."""

  text: str
  tokens: int = 0
  artifact_name: str | None = None
  artifact_content: str | bytes | None = None


@dataclass(frozen=True)
class JobAssembly:
  """Aggregate result of a completed job."""

  result: dict[str, Any]
  artifact_name: str | None = None
  artifact_content: str | bytes | None = None


class ModuleHandler(Protocol):
  """Contract every tool module implements."""

  key: str
  title: str
  policy: ModulePolicy
  default_models: dict[str, Any]
  default_prompts: dict[str, str]
  # Shared reference sets ("glossary", "journals") loaded before the job runs.
  reference_data: tuple[str, ...]

  def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
    """Return the normalized payload or raise ValidationFailedError."""

  def build_items(self, job_id: str, payload: dict[str, Any]) -> list[JobItemRecord]:
    """Return the first round of items for a new job."""

  def estimate_tokens(self, payload: dict[str, Any]) -> int:
    """Projected token spend used at admission."""

  async def run_item(self, ctx: ItemContext, item: JobItemRecord) -> ItemOutput:
    """Execute one attempt of an item; raise ProviderError/ParseError on failure."""

  def next_round(self, job: JobRecord, finished_round: int, items: list[JobItemRecord]) -> list[JobItemRecord]:
    """Items for the following round, or an empty list when the job is done."""

  def assemble(self, job: JobRecord, items: list[JobItemRecord]) -> JobAssembly:
    """Build the aggregate result from every item of a successful job."""


class ModuleRegistry:
  """Registry mapping module keys to handlers."""

  def __init__(self, handlers: Iterable[ModuleHandler]) -> None:
    self._handlers: dict[str, ModuleHandler] = {}
    for handler in handlers:
      if handler.key in self._handlers:
        raise ValueError(f"Duplicate module key: {handler.key}")
      self._handlers[handler.key] = handler

  def resolve(self, module_key: str) -> ModuleHandler:
    """Resolve the handler for a module key."""
    handler = self._handlers.get(module_key)
    if handler is None:
      raise UnknownModuleError(f"Unsupported module: {module_key}")
    return handler

  def keys(self) -> list[str]:
    return list(self._handlers)

  def handlers(self) -> list[ModuleHandler]:
    return list(self._handlers.values())

  def __contains__(self, module_key: object) -> bool:
    return module_key in self._handlers


def build_default_registry() -> ModuleRegistry:
  """Register every shipped tool module."""
  from doctools.modules.grader import GraderHandler
  from doctools.modules.info_extract import InfoExtractHandler
  from doctools.modules.reviewer import ReviewerHandler
  from doctools.modules.summarizer import SummarizerHandler
  from doctools.modules.translatedocx import TranslateDocxHandler

  return ModuleRegistry([SummarizerHandler(), TranslateDocxHandler(), GraderHandler(), InfoExtractHandler(), ReviewerHandler()])
