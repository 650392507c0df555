from __future__ import annotations

import datetime
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from doctools.core.database import Base


class User(Base):
  __tablename__ = "users"

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  username: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
  display_name: Mapped[str | None] = mapped_column(String, nullable=True)
  is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  usage_group_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("usage_groups.id"), nullable=True, index=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserSession(Base):
  __tablename__ = "user_sessions"

  token: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
