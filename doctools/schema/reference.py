from __future__ import annotations

import datetime
import uuid

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Index, SmallInteger, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from doctools.core.database import Base


class GlossaryTerm(Base):
  """Shared EN/CN term pair applied by every translating module."""

  __tablename__ = "glossary_terms"

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  source_term: Mapped[str] = mapped_column(String, nullable=False)
  target_term: Mapped[str] = mapped_column(String, nullable=False)
  notes: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


Index("ux_glossary_terms_source_lower", func.lower(GlossaryTerm.source_term), unique=True)


class JournalTopic(Base):
  __tablename__ = "journal_topics"

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class JournalReference(Base):
  """A journal and the grading score a manuscript needs to be recommended to it."""

  __tablename__ = "journal_reference_entries"
  __table_args__ = (CheckConstraint("low_bound >= 0", name="ck_journal_reference_entries_low_bound"),)

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  journal_name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
  reference_mark: Mapped[str | None] = mapped_column(String, nullable=True)
  low_bound: Mapped[float] = mapped_column(Float, nullable=False)
  notes: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class JournalTopicScore(Base):
  __tablename__ = "journal_topic_scores"

  journal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("journal_reference_entries.id", ondelete="CASCADE"), primary_key=True, index=True)
  topic_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("journal_topics.id", ondelete="CASCADE"), primary_key=True, index=True)
  score: Mapped[int] = mapped_column(SmallInteger, nullable=False)
