"""Per-module job and job-item tables sharing one column layout."""

from __future__ import annotations

import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from doctools.core.database import Base


class JobColumnsMixin:
  """Columns shared by every `<module>_jobs` table."""

  id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  module_key: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending", server_default="pending")
  status_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  usage_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
  result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  result_path: Mapped[str | None] = mapped_column(Text, nullable=True)
  files_purged_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

  @declared_attr.directive
  def __table_args__(cls) -> tuple:
    # Sweeper scans terminal, unpurged jobs by age.
    return (Index(f"ix_{cls.__tablename__}_status_created", "status", "created_at"),)


class JobItemColumnsMixin:
  """Columns shared by every `<module>_job_items` table."""

  __job_table__: str

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
  label: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending", server_default="pending")
  status_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
  attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  input: Mapped[dict] = mapped_column(JSONB, nullable=False)
  output_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  output_path: Mapped[str | None] = mapped_column(Text, nullable=True)
  tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

  @declared_attr
  def job_id(cls) -> Mapped[str]:
    return mapped_column(ForeignKey(f"{cls.__job_table__}.id", ondelete="CASCADE"), nullable=False, index=True)

  @declared_attr.directive
  def __table_args__(cls) -> tuple:
    return (UniqueConstraint("job_id", "round", "ordinal", name=f"ux_{cls.__tablename__}_slot"),)


class SummarizerJob(JobColumnsMixin, Base):
  __tablename__ = "summarizer_jobs"


class SummarizerJobItem(JobItemColumnsMixin, Base):
  __tablename__ = "summarizer_job_items"
  __job_table__ = "summarizer_jobs"


class TranslateDocxJob(JobColumnsMixin, Base):
  __tablename__ = "translatedocx_jobs"


class TranslateDocxJobItem(JobItemColumnsMixin, Base):
  __tablename__ = "translatedocx_job_items"
  __job_table__ = "translatedocx_jobs"


class GraderJob(JobColumnsMixin, Base):
  __tablename__ = "grader_jobs"


class GraderJobItem(JobItemColumnsMixin, Base):
  __tablename__ = "grader_job_items"
  __job_table__ = "grader_jobs"


class InfoExtractJob(JobColumnsMixin, Base):
  __tablename__ = "info_extract_jobs"


class InfoExtractJobItem(JobItemColumnsMixin, Base):
  __tablename__ = "info_extract_job_items"
  __job_table__ = "info_extract_jobs"


class ReviewerJob(JobColumnsMixin, Base):
  __tablename__ = "reviewer_jobs"


class ReviewerJobItem(JobItemColumnsMixin, Base):
  __tablename__ = "reviewer_job_items"
  __job_table__ = "reviewer_jobs"


# Module key -> (job model, item model).
JOB_TABLES: dict[str, tuple[type[JobColumnsMixin], type[JobItemColumnsMixin]]] = {
  "summarizer": (SummarizerJob, SummarizerJobItem),
  "translatedocx": (TranslateDocxJob, TranslateDocxJobItem),
  "grader": (GraderJob, GraderJobItem),
  "info_extract": (InfoExtractJob, InfoExtractJobItem),
  "reviewer": (ReviewerJob, ReviewerJobItem),
}


def job_tables_for(module_key: str) -> tuple[type[JobColumnsMixin], type[JobItemColumnsMixin]]:
  """Return the ORM models backing a module's jobs."""
  tables = JOB_TABLES.get(module_key)
  if tables is None:
    raise KeyError(f"No job tables registered for module '{module_key}'")
  return tables
