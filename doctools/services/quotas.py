"""Quota policy: usage-group limits and point-in-time admission checks."""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.core.errors import QuotaExceededError, UsageBackendError
from doctools.schema.usage import UsageGroup, UsageGroupLimit
from doctools.schema.users import User
from doctools.services.usage import WINDOW_DAYS, tokens_in_window, units_for_module, window_start

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaPolicy:
  """Limits that apply to one user for one module."""

  group_id: uuid.UUID
  token_limit: int | None
  unit_limit: int | None
  unit_window_days: int | None


@dataclass(frozen=True)
class UsageSnapshot:
  """Current consumption next to the limits it is measured against."""

  tokens: int
  units: int
  token_limit: int | None
  unit_limit: int | None


@dataclass(frozen=True)
class QuotaDecision:
  admitted: bool
  reason: str | None = None


@dataclass(frozen=True)
class ModuleLimit:
  """One row of a usage group's per-module caps."""

  unit_limit: int | None
  window_days: int | None = None


@asynccontextmanager
async def _quota_transaction(session: AsyncSession):
  """Start a transaction appropriate for the current session state.

  AsyncSession autobegins on the first statement, so nest with a SAVEPOINT when
  a transaction is already open.
  """
  if session.in_transaction():
    async with session.begin_nested():
      yield
    return
  async with session.begin():
    yield


async def load_quota_policy(session: AsyncSession, *, user_id: uuid.UUID, module_key: str) -> QuotaPolicy:
  """Resolve the caller's group limits; a user without a group cannot submit."""
  stmt = (
    select(User.usage_group_id, UsageGroup.token_limit, UsageGroupLimit.unit_limit, UsageGroupLimit.window_days)
    .select_from(User)
    .outerjoin(UsageGroup, UsageGroup.id == User.usage_group_id)
    .outerjoin(UsageGroupLimit, (UsageGroupLimit.group_id == UsageGroup.id) & (UsageGroupLimit.module_key == module_key))
    .where(User.id == user_id)
  )
  result = await session.execute(stmt)
  row = result.one_or_none()
  if row is None:
    raise UsageBackendError("user does not exist")
  group_id, token_limit, unit_limit, window_days = row
  if group_id is None:
    raise UsageBackendError("user has no usage group")
  return QuotaPolicy(group_id=group_id, token_limit=token_limit, unit_limit=unit_limit, unit_window_days=window_days)


async def load_snapshot(session: AsyncSession, *, user_id: uuid.UUID, module_key: str, policy: QuotaPolicy, now: datetime.datetime | None = None) -> UsageSnapshot:
  """Tokens over the trailing week across all modules; units for this module over its window."""
  token_since = window_start(now=now, days=WINDOW_DAYS)
  tokens = await tokens_in_window(session, user_id=user_id, since=token_since)
  unit_since = window_start(now=now, days=policy.unit_window_days) if policy.unit_window_days else None
  units = await units_for_module(session, user_id=user_id, module_key=module_key, since=unit_since)
  return UsageSnapshot(tokens=tokens, units=units, token_limit=policy.token_limit, unit_limit=policy.unit_limit)


def evaluate_quota(snapshot: UsageSnapshot, *, projected_tokens: int, projected_units: int) -> QuotaDecision:
  """Pure admission rule over a snapshot and the submission's projection."""
  projected_tokens = max(int(projected_tokens), 0)
  projected_units = max(int(projected_units), 0)
  if snapshot.token_limit is not None and snapshot.tokens + projected_tokens > snapshot.token_limit:
    return QuotaDecision(admitted=False, reason=f"Weekly token limit reached ({snapshot.tokens} used + {projected_tokens} projected > {snapshot.token_limit}).")
  if snapshot.unit_limit is not None and snapshot.units + projected_units > snapshot.unit_limit:
    return QuotaDecision(admitted=False, reason=f"Job limit reached ({snapshot.units} used + {projected_units} requested > {snapshot.unit_limit}).")
  return QuotaDecision(admitted=True)


async def check_quota(session: AsyncSession, *, user_id: uuid.UUID, module_key: str, projected_units: int, projected_tokens: int) -> UsageSnapshot:
  """Raise QuotaExceededError when the submission would exceed a limit.

  Point-in-time read with no reservation; concurrent submissions may both pass.
  """
  policy = await load_quota_policy(session, user_id=user_id, module_key=module_key)
  snapshot = await load_snapshot(session, user_id=user_id, module_key=module_key, policy=policy)
  decision = evaluate_quota(snapshot, projected_tokens=projected_tokens, projected_units=projected_units)
  if not decision.admitted:
    logger.info("Quota rejected user=%s module=%s reason=%s", user_id, module_key, decision.reason)
    raise QuotaExceededError(decision.reason or "quota exceeded")
  return snapshot


async def group_limits(session: AsyncSession, group_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, dict[str, ModuleLimit]]:
  """Per-module caps for several groups at once."""
  if not group_ids:
    return {}
  stmt = select(UsageGroupLimit.group_id, UsageGroupLimit.module_key, UsageGroupLimit.unit_limit, UsageGroupLimit.window_days).where(UsageGroupLimit.group_id.in_(list(group_ids)))
  result = await session.execute(stmt)
  limits: dict[uuid.UUID, dict[str, ModuleLimit]] = {}
  for group_id, module_key, unit_limit, window_days in result.all():
    limits.setdefault(group_id, {})[module_key] = ModuleLimit(unit_limit=unit_limit, window_days=window_days)
  return limits


async def upsert_group_limits(session: AsyncSession, *, group_id: uuid.UUID, token_limit: int | None, allocations: Mapping[str, ModuleLimit]) -> None:
  """Replace a group's token limit and per-module caps in one transaction.

  Entries with neither a unit limit nor a window are dropped.
  """
  async with _quota_transaction(session):
    group = await session.get(UsageGroup, group_id, with_for_update=True)
    if group is None:
      raise LookupError(f"usage group {group_id} not found")
    group.token_limit = token_limit
    await session.execute(delete(UsageGroupLimit).where(UsageGroupLimit.group_id == group_id))
    for module_key, limit in allocations.items():
      if limit.unit_limit is None and limit.window_days is None:
        continue
      session.add(UsageGroupLimit(group_id=group_id, module_key=module_key, unit_limit=limit.unit_limit, window_days=limit.window_days))
    await session.flush()


def parse_optional_limit(raw: str | None) -> int | None:
  """Parse an admin-entered limit: blank means unlimited, negatives are rejected."""
  if raw is None:
    return None
  value = str(raw).strip()
  if not value:
    return None
  try:
    parsed = int(value)
  except ValueError as exc:
    raise ValueError("invalid limit value") from exc
  if parsed < 0:
    raise ValueError("limit cannot be negative")
  return parsed
