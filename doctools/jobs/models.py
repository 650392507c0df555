"""Domain models for asynchronous document-tool jobs."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Literal

from doctools.core.errors import InvalidTransitionError

JobStatus = Literal["pending", "processing", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

# Allowed lifecycle edges; terminal states are absorbing.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
  "pending": frozenset({"processing", "failed"}),
  "processing": frozenset({"completed", "failed"}),
  "completed": frozenset(),
  "failed": frozenset(),
}


def is_terminal(status: str) -> bool:
  """Return True when a status can no longer change."""
  return status in TERMINAL_STATUSES


def transition(current: str, target: str) -> JobStatus:
  """Validate a status change and return the new status."""
  allowed = ALLOWED_TRANSITIONS.get(current)
  if allowed is None or target not in allowed:
    raise InvalidTransitionError(current, target)
  return target  # type: ignore[return-value]


def utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


@dataclass(frozen=True)
class JobRecord:
  """Represents one submission against a tool module."""

  job_id: str
  user_id: str
  module_key: str
  status: JobStatus
  payload: dict[str, Any]
  created_at: datetime.datetime
  updated_at: datetime.datetime
  status_detail: str | None = None
  error_message: str | None = None
  usage_delta: int = 0
  total_tokens: int = 0
  result: dict[str, Any] | None = None
  result_path: str | None = None
  files_purged_at: datetime.datetime | None = None
  completed_at: datetime.datetime | None = None

  @property
  def is_terminal(self) -> bool:
    return is_terminal(self.status)

  @property
  def files_purged(self) -> bool:
    return self.files_purged_at is not None


@dataclass(frozen=True)
class JobItemRecord:
  """Represents one unit of work inside a job (a document, chunk, or reviewer call)."""

  job_id: str
  round: int
  ordinal: int
  label: str
  status: JobStatus = "pending"
  input: dict[str, Any] = field(default_factory=dict)
  status_detail: str | None = None
  attempt_count: int = 0
  error_message: str | None = None
  output_text: str | None = None
  output_path: str | None = None
  tokens_used: int = 0

  @property
  def slot(self) -> tuple[int, int]:
    return (self.round, self.ordinal)

  @property
  def succeeded(self) -> bool:
    return self.status == "completed"
