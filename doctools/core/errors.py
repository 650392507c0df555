"""Error taxonomy shared by admission, workers, storage, and the HTTP layer."""

from __future__ import annotations


class AdmissionError(RuntimeError):
  """Raised synchronously when a submission is refused; never retried."""


class QuotaExceededError(AdmissionError):
  """Raised when a submission would exceed the caller's usage group limits."""

  def __init__(self, reason: str) -> None:
    super().__init__(reason)
    self.reason = reason


class ValidationFailedError(AdmissionError):
  """Raised when a submission payload fails module validation."""


class UsageBackendError(AdmissionError):
  """Raised when quota state cannot be resolved (e.g. missing usage group)."""


class ProviderError(RuntimeError):
  """Raised when an LLM provider call fails (transport, non-2xx, empty body)."""

  def __init__(self, message: str, *, provider: str | None = None, model: str | None = None) -> None:
    super().__init__(message)
    self.provider = provider
    self.model = model


class ParseError(RuntimeError):
  """Raised when model output cannot be interpreted by a module handler."""


class StorageError(RuntimeError):
  """Raised when an artifact cannot be written or removed."""


class InvalidTransitionError(RuntimeError):
  """Raised when a job status change is not allowed by the lifecycle."""

  def __init__(self, current: str, target: str) -> None:
    super().__init__(f"Invalid job transition {current} -> {target}")
    self.current = current
    self.target = target


class JobNotFoundError(LookupError):
  """Raised when a job id does not exist for the requested module."""


class JobForbiddenError(PermissionError):
  """Raised when a requester may not read a job."""


class JobGoneError(RuntimeError):
  """Raised when a job's artifacts were purged by retention."""


class UnknownModuleError(LookupError):
  """Raised when a module key is not registered."""
