"""Usage ledger: append-only usage events and rolling-window aggregates."""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.schema.usage import UsageEvent

logger = logging.getLogger(__name__)

WINDOW_DAYS = 7


@dataclass(frozen=True)
class UsageTotals:
  """Summed tokens and units for one user over a window."""

  tokens: int = 0
  units: int = 0


def _utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


def window_start(*, now: datetime.datetime | None = None, days: int = WINDOW_DAYS) -> datetime.datetime:
  """Start of the trailing window ending at `now`."""
  current = now or _utc_now()
  if current.tzinfo is None:
    raise ValueError("now must be timezone-aware (UTC).")
  return current - datetime.timedelta(days=days)


async def record_usage(session: AsyncSession, *, user_id: uuid.UUID, module_key: str, tokens: int, units: int) -> UsageEvent:
  """Append one usage event; negative values are clamped to zero.

  The caller owns the transaction; the event is flushed, not committed.
  """
  event = UsageEvent(user_id=user_id, module_key=module_key, tokens=max(int(tokens), 0), units=max(int(units), 0), occurred_at=_utc_now())
  session.add(event)
  await session.flush()
  return event


async def tokens_in_window(session: AsyncSession, *, user_id: uuid.UUID, since: datetime.datetime) -> int:
  """Tokens consumed across every module since `since`."""
  stmt = select(func.coalesce(func.sum(UsageEvent.tokens), 0)).where(UsageEvent.user_id == user_id, UsageEvent.occurred_at >= since)
  result = await session.execute(stmt)
  return int(result.scalar_one() or 0)


async def units_for_module(session: AsyncSession, *, user_id: uuid.UUID, module_key: str, since: datetime.datetime | None) -> int:
  """Units charged to one module; `since=None` counts the whole ledger."""
  stmt = select(func.coalesce(func.sum(UsageEvent.units), 0)).where(UsageEvent.user_id == user_id, UsageEvent.module_key == module_key)
  if since is not None:
    stmt = stmt.where(UsageEvent.occurred_at >= since)
  result = await session.execute(stmt)
  return int(result.scalar_one() or 0)


async def usage_for_users(session: AsyncSession, user_ids: Sequence[uuid.UUID], *, now: datetime.datetime | None = None) -> dict[uuid.UUID, dict[str, UsageTotals]]:
  """Per-user, per-module totals over the trailing window, for admin dashboards."""
  if not user_ids:
    return {}
  since = window_start(now=now)
  stmt = (
    select(UsageEvent.user_id, UsageEvent.module_key, func.coalesce(func.sum(UsageEvent.tokens), 0), func.coalesce(func.sum(UsageEvent.units), 0))
    .where(UsageEvent.user_id.in_(list(user_ids)), UsageEvent.occurred_at >= since)
    .group_by(UsageEvent.user_id, UsageEvent.module_key)
  )
  result = await session.execute(stmt)
  totals: dict[uuid.UUID, dict[str, UsageTotals]] = {}
  for user_id, module_key, tokens, units in result.all():
    totals.setdefault(user_id, {})[module_key] = UsageTotals(tokens=int(tokens or 0), units=int(units or 0))
  return totals


def make_usage_recorder(session_factory):  # type: ignore[no-untyped-def]
  """Build the worker's usage callback; each event commits in its own session."""

  async def _record(user_id: str, module_key: str, tokens: int, units: int) -> None:
    if tokens <= 0 and units <= 0:
      return
    async with session_factory() as session:
      await record_usage(session, user_id=uuid.UUID(str(user_id)), module_key=module_key, tokens=tokens, units=units)
      await session.commit()
    logger.debug("Usage recorded user=%s module=%s tokens=%d units=%d", user_id, module_key, tokens, units)

  return _record
