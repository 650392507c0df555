"""Per-module failure policy: attempt caps, concurrency, delays, and success thresholds."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from doctools.jobs.models import JobItemRecord, JobStatus

DelayFn = Callable[[int], float]


def fixed_delay(seconds: float) -> DelayFn:
  """Wait the same amount before every retry."""
  return lambda attempt: seconds


def linear_delay(seconds: float) -> DelayFn:
  """Wait `seconds * attempt` before retrying (attempt is 1-based)."""
  return lambda attempt: seconds * attempt


def no_delay() -> DelayFn:
  return lambda attempt: 0.0


@dataclass(frozen=True)
class SuccessThreshold:
  """Minimum number of successful items a round needs.

  `minimum` of None means every item must succeed.
  """

  minimum: int | None = None

  def is_met(self, succeeded: int, total: int) -> bool:
    if self.minimum is None:
      return succeeded == total
    return succeeded >= min(self.minimum, total) and succeeded > 0

  def describe(self, total: int) -> str:
    if self.minimum is None:
      return f"all {total}"
    return f"at least {min(self.minimum, total)} of {total}"


def require_all() -> SuccessThreshold:
  return SuccessThreshold(minimum=None)


def at_least(count: int) -> SuccessThreshold:
  if count < 1:
    raise ValueError("Success threshold must be at least 1.")
  return SuccessThreshold(minimum=count)


def at_least_one() -> SuccessThreshold:
  return SuccessThreshold(minimum=1)


@dataclass(frozen=True)
class ModulePolicy:
  """Retry and success rules applied by the worker to one module's items."""

  attempt_cap: int
  concurrency_cap: int
  retry_delay: DelayFn = field(default_factory=no_delay)
  thresholds: dict[int, SuccessThreshold] = field(default_factory=dict)
  units_per_item: int = 0
  units_per_job: int = 0

  def __post_init__(self) -> None:
    if self.attempt_cap < 1:
      raise ValueError("attempt_cap must be at least 1.")
    if self.concurrency_cap < 1:
      raise ValueError("concurrency_cap must be at least 1.")
    if self.units_per_item < 0 or self.units_per_job < 0:
      raise ValueError("Unit charges must be non-negative.")

  def threshold_for(self, round_number: int) -> SuccessThreshold:
    """Rounds without an explicit threshold require every item."""
    return self.thresholds.get(round_number, require_all())


def round_outcome(items: Sequence[JobItemRecord], threshold: SuccessThreshold) -> bool:
  """Return True when a round's items satisfy its threshold."""
  succeeded = sum(1 for item in items if item.succeeded)
  return threshold.is_met(succeeded, len(items))


def derive_job_status(items: Sequence[JobItemRecord], policy: ModulePolicy) -> JobStatus:
  """Derive the terminal job status from item outcomes.

  Pure function of item states; every round present must satisfy its threshold.
  A job with no items fails.
  """
  if not items:
    return "failed"
  rounds: dict[int, list[JobItemRecord]] = {}
  for item in items:
    rounds.setdefault(item.round, []).append(item)
  for round_number in sorted(rounds):
    if not round_outcome(rounds[round_number], policy.threshold_for(round_number)):
      return "failed"
  return "completed"
