"""Retry combinator shared by every module's item execution."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from doctools.core.errors import ParseError, ProviderError
from doctools.jobs.policy import DelayFn

T = TypeVar("T")
logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
  """Provider and parse failures are retried; everything else propagates."""
  return isinstance(exc, ProviderError | ParseError)


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
  """Result of a retried operation: a value or the last error, plus attempts used."""

  value: T | None
  error: BaseException | None
  attempts: int

  @property
  def ok(self) -> bool:
    return self.error is None


async def run_with_retry(
  operation: Callable[[int], Awaitable[T]],
  *,
  max_attempts: int,
  delay: DelayFn,
  retryable: Callable[[BaseException], bool] = is_retryable,
  label: str = "operation",
  on_attempt_failed: Callable[[int, BaseException], Awaitable[None]] | None = None,
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
  """Run `operation(attempt)` up to `max_attempts` times.

  Retryable failures are retained and retried after `delay(attempt)` seconds;
  the last one is returned when attempts run out. Non-retryable exceptions
  propagate to the caller unchanged.
  """
  if max_attempts < 1:
    raise ValueError("max_attempts must be at least 1.")

  last_error: BaseException | None = None
  for attempt in range(1, max_attempts + 1):
    try:
      value = await operation(attempt)
    except Exception as exc:
      if not retryable(exc):
        raise
      last_error = exc
      logger.warning("Attempt failed label=%s attempt=%d/%d error=%s", label, attempt, max_attempts, exc)
      if on_attempt_failed is not None:
        await on_attempt_failed(attempt, exc)
      if attempt < max_attempts:
        wait_seconds = delay(attempt)
        if wait_seconds > 0:
          await sleep(wait_seconds)
      continue
    if attempt > 1:
      logger.info("Operation succeeded after retry label=%s attempt=%d/%d", label, attempt, max_attempts)
    return RetryOutcome(value=value, error=None, attempts=attempt)

  logger.error("Operation exhausted retries label=%s attempts=%d last_error=%s", label, max_attempts, last_error)
  return RetryOutcome(value=None, error=last_error, attempts=max_attempts)
