"""Initial schema: users, usage metering, history, module configs, per-module job tables.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-16
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

JOB_MODULES = ("summarizer", "translatedocx", "grader", "info_extract", "reviewer")


def _create_job_tables(module: str) -> None:
  jobs = f"{module}_jobs"
  items = f"{module}_job_items"
  op.create_table(
    jobs,
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("module_key", sa.String(), nullable=False),
    sa.Column("status", sa.String(), server_default="pending", nullable=False),
    sa.Column("status_detail", sa.Text(), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("usage_delta", sa.Integer(), server_default="0", nullable=False),
    sa.Column("total_tokens", sa.BigInteger(), server_default="0", nullable=False),
    sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("result_path", sa.Text(), nullable=True),
    sa.Column("files_purged_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(f"ix_{jobs}_user_id", jobs, ["user_id"], unique=False)
  op.create_index(f"ix_{jobs}_status_created", jobs, ["status", "created_at"], unique=False)

  op.create_table(
    items,
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("round", sa.Integer(), nullable=False),
    sa.Column("ordinal", sa.Integer(), nullable=False),
    sa.Column("label", sa.String(), nullable=False),
    sa.Column("status", sa.String(), server_default="pending", nullable=False),
    sa.Column("status_detail", sa.Text(), nullable=True),
    sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("input", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("output_text", sa.Text(), nullable=True),
    sa.Column("output_path", sa.Text(), nullable=True),
    sa.Column("tokens_used", sa.BigInteger(), server_default="0", nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["job_id"], [f"{jobs}.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("job_id", "round", "ordinal", name=f"ux_{items}_slot"),
  )
  op.create_index(f"ix_{items}_job_id", items, ["job_id"], unique=False)


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "usage_groups",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("token_limit", sa.BigInteger(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("name"),
  )
  op.create_table(
    "users",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("username", sa.String(), nullable=False),
    sa.Column("display_name", sa.String(), nullable=True),
    sa.Column("is_admin", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("usage_group_id", postgresql.UUID(as_uuid=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
    sa.ForeignKeyConstraint(["usage_group_id"], ["usage_groups.id"]),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_users_username", "users", ["username"], unique=True)
  op.create_index("ix_users_usage_group_id", "users", ["usage_group_id"], unique=False)

  op.create_table(
    "user_sessions",
    sa.Column("token", sa.String(), nullable=False),
    sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
    sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("token"),
  )
  op.create_index("ix_user_sessions_user_id", "user_sessions", ["user_id"], unique=False)

  op.create_table(
    "usage_group_limits",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("group_id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("module_key", sa.String(), nullable=False),
    sa.Column("unit_limit", sa.BigInteger(), nullable=True),
    sa.Column("window_days", sa.Integer(), nullable=True),
    sa.ForeignKeyConstraint(["group_id"], ["usage_groups.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("group_id", "module_key", name="ux_usage_group_limits_group_module"),
  )
  op.create_index("ix_usage_group_limits_group_id", "usage_group_limits", ["group_id"], unique=False)

  op.create_table(
    "usage_events",
    sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
    sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("module_key", sa.String(), nullable=False),
    sa.Column("tokens", sa.BigInteger(), nullable=False),
    sa.Column("units", sa.BigInteger(), nullable=False),
    sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("tokens >= 0", name="ck_usage_events_tokens_non_negative"),
    sa.CheckConstraint("units >= 0", name="ck_usage_events_units_non_negative"),
    sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_usage_events_module_key", "usage_events", ["module_key"], unique=False)
  op.create_index("ix_usage_events_user_occurred", "usage_events", ["user_id", "occurred_at"], unique=False)

  op.create_table(
    "user_job_history",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("module", sa.String(), nullable=False),
    sa.Column("job_key", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("module", "job_key", name="ux_user_job_history_module_job"),
  )
  op.create_index("ix_user_job_history_user_module_created", "user_job_history", ["user_id", "module", "created_at"], unique=False)

  op.create_table(
    "module_configs",
    sa.Column("module_name", sa.String(), nullable=False),
    sa.Column("models", postgresql.JSONB(astext_type=sa.Text()), server_default="{}", nullable=False),
    sa.Column("prompts", postgresql.JSONB(astext_type=sa.Text()), server_default="{}", nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("module_name"),
  )

  for module in JOB_MODULES:
    _create_job_tables(module)


def downgrade() -> None:
  """Downgrade schema."""
  for module in reversed(JOB_MODULES):
    op.drop_table(f"{module}_job_items")
    op.drop_table(f"{module}_jobs")
  op.drop_table("module_configs")
  op.drop_table("user_job_history")
  op.drop_table("usage_events")
  op.drop_table("usage_group_limits")
  op.drop_table("user_sessions")
  op.drop_table("users")
  op.drop_table("usage_groups")
