from __future__ import annotations

import datetime
import uuid

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from doctools.core.database import Base


class UserJobHistory(Base):
  __tablename__ = "user_job_history"
  __table_args__ = (
    UniqueConstraint("module", "job_key", name="ux_user_job_history_module_job"),
    Index("ix_user_job_history_user_module_created", "user_id", "module", "created_at"),
  )

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
  module: Mapped[str] = mapped_column(String, nullable=False)
  job_key: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
