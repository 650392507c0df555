"""SQLAlchemy models for usage metering and usage-group limits."""

from __future__ import annotations

import datetime
import uuid

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from doctools.core.database import Base


class UsageGroup(Base):
  __tablename__ = "usage_groups"

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  token_limit: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageGroupLimit(Base):
  __tablename__ = "usage_group_limits"
  __table_args__ = (UniqueConstraint("group_id", "module_key", name="ux_usage_group_limits_group_module"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("usage_groups.id", ondelete="CASCADE"), nullable=False, index=True)
  module_key: Mapped[str] = mapped_column(String, nullable=False)
  unit_limit: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
  window_days: Mapped[int | None] = mapped_column(Integer, nullable=True)


class UsageEvent(Base):
  __tablename__ = "usage_events"
  __table_args__ = (
    CheckConstraint("tokens >= 0", name="ck_usage_events_tokens_non_negative"),
    CheckConstraint("units >= 0", name="ck_usage_events_units_non_negative"),
    Index("ix_usage_events_user_occurred", "user_id", "occurred_at"),
  )

  id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
  user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
  module_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
  tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
  units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
  occurred_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
