"""Batch prospect processing tables

Revision ID: 0001_batch_processing
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_batch_processing"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "batch_prospect_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("total_prospects", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("settings", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("webhook_secret", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'paused', 'completed', 'failed', 'cancelled')",
            name="ck_batch_jobs_status",
        ),
        sa.CheckConstraint("completed_count + failed_count <= total_prospects", name="ck_batch_jobs_counts"),
    )
    op.create_index("ix_batch_jobs_user_status", "batch_prospect_jobs", ["user_id", "status"])
    op.create_index("ix_batch_jobs_created_at", "batch_prospect_jobs", ["created_at"])

    op.create_table(
        "batch_prospect_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("batch_prospect_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("item_index", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("input_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("prospect_name", sa.Text(), nullable=True),
        sa.Column("prospect_address", sa.Text(), nullable=True),
        sa.Column("prospect_city", sa.Text(), nullable=True),
        sa.Column("prospect_state", sa.Text(), nullable=True),
        sa.Column("prospect_zip", sa.Text(), nullable=True),
        sa.Column("report_content", sa.Text(), nullable=True),
        sa.Column("romy_score", sa.Integer(), nullable=True),
        sa.Column("romy_score_tier", sa.String(length=50), nullable=True),
        sa.Column("capacity_rating", sa.String(length=50), nullable=True),
        sa.Column("estimated_net_worth", sa.Numeric(), nullable=True),
        sa.Column("estimated_gift_capacity", sa.Numeric(), nullable=True),
        sa.Column("recommended_ask", sa.Numeric(), nullable=True),
        sa.Column("structured_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("sources_found", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_duration_ms", sa.Integer(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("model_used", sa.String(length=200), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed')", name="ck_batch_items_status"),
        sa.CheckConstraint("retry_count >= 0", name="ck_batch_items_retry_count"),
    )
    op.create_index("uq_batch_items_job_index", "batch_prospect_items", ["job_id", "item_index"], unique=True)
    op.create_index("ix_batch_items_job_status", "batch_prospect_items", ["job_id", "status"])

    op.create_table(
        "research_cache_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("namespace", sa.String(length=50), nullable=False),
        sa.Column("cache_key", sa.Text(), nullable=False),
        sa.Column("key_hash", sa.String(length=64), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("uq_research_cache_key", "research_cache_entries", ["namespace", "key_hash"], unique=True)
    op.create_index("ix_research_cache_expires", "research_cache_entries", ["expires_at"])

    op.create_table(
        "idempotency_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("status IN ('in_progress', 'completed', 'failed')", name="ck_idempotency_status"),
    )
    op.create_index("uq_idempotency_key", "idempotency_records", ["key"], unique=True)
    op.create_index("ix_idempotency_expires", "idempotency_records", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_idempotency_expires", table_name="idempotency_records")
    op.drop_index("uq_idempotency_key", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_research_cache_expires", table_name="research_cache_entries")
    op.drop_index("uq_research_cache_key", table_name="research_cache_entries")
    op.drop_table("research_cache_entries")
    op.drop_index("ix_batch_items_job_status", table_name="batch_prospect_items")
    op.drop_index("uq_batch_items_job_index", table_name="batch_prospect_items")
    op.drop_table("batch_prospect_items")
    op.drop_index("ix_batch_jobs_created_at", table_name="batch_prospect_jobs")
    op.drop_index("ix_batch_jobs_user_status", table_name="batch_prospect_jobs")
    op.drop_table("batch_prospect_jobs")
