from __future__ import annotations

import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from doctools.core.database import Base


class ModuleConfig(Base):
  """Admin-editable model and prompt selections for a tool module."""

  __tablename__ = "module_configs"

  module_name: Mapped[str] = mapped_column(String, primary_key=True)
  models: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")
  prompts: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
