"""Shared glossary and journal catalog used by translation and grading.

Revision ID: 0002_reference_data
Revises: 0001_initial_schema
Create Date: 2026-10-16
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0002_reference_data"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "glossary_terms",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("source_term", sa.String(), nullable=False),
    sa.Column("target_term", sa.String(), nullable=False),
    sa.Column("notes", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ux_glossary_terms_source_lower", "glossary_terms", [sa.text("lower(source_term)")], unique=True)

  op.create_table(
    "journal_topics",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("name"),
  )

  op.create_table(
    "journal_reference_entries",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("journal_name", sa.String(), nullable=False),
    sa.Column("reference_mark", sa.String(), nullable=True),
    sa.Column("low_bound", sa.Float(), nullable=False),
    sa.Column("notes", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("low_bound >= 0", name="ck_journal_reference_entries_low_bound"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("journal_name"),
  )

  op.create_table(
    "journal_topic_scores",
    sa.Column("journal_id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("topic_id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("score", sa.SmallInteger(), nullable=False),
    sa.ForeignKeyConstraint(["journal_id"], ["journal_reference_entries.id"], ondelete="CASCADE"),
    sa.ForeignKeyConstraint(["topic_id"], ["journal_topics.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("journal_id", "topic_id"),
  )
  op.create_index("ix_journal_topic_scores_journal_id", "journal_topic_scores", ["journal_id"], unique=False)
  op.create_index("ix_journal_topic_scores_topic_id", "journal_topic_scores", ["topic_id"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_table("journal_topic_scores")
  op.drop_table("journal_reference_entries")
  op.drop_table("journal_topics")
  op.drop_index("ux_glossary_terms_source_lower", table_name="glossary_terms")
  op.drop_table("glossary_terms")
