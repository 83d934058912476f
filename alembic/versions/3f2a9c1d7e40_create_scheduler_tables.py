"""create_scheduler_tables

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-12 09:14:03.118204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c1d7e40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_PREDICATE = "status IN ('pending', 'processing')"


def upgrade() -> None:
    """Create subscriptions, schedule_jobs, spend ledger, aggregates and episodes."""
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("brief", sa.String(), nullable=True),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("cadence_mode", sa.String(length=20), nullable=False),
        sa.Column("cadence_days", sa.JSON(), nullable=True),
        sa.Column("delivery_hour", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(length=100), nullable=False),
        sa.Column("daily_cost_limit", sa.Numeric(12, 2), nullable=True),
        sa.Column("job_cost_limit", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "schedule_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("generation_start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("target_delivery_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("lease_owner", sa.String(length=255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("result_artifact_id", sa.Uuid(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_schedule_jobs_subscription_id", "schedule_jobs", ["subscription_id"], unique=False
    )
    op.create_index(
        "ix_schedule_jobs_claim",
        "schedule_jobs",
        ["status", "generation_start_time", "priority"],
        unique=False,
    )
    # At most one non-terminal job per subscription period
    op.create_index(
        "uq_schedule_jobs_active_idempotency_key",
        "schedule_jobs",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PREDICATE),
        sqlite_where=sa.text(ACTIVE_PREDICATE),
    )

    op.create_table(
        "spend_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("operation", sa.String(length=20), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False),
        sa.Column("completion_tokens", sa.Integer(), nullable=False),
        sa.Column("note", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["schedule_jobs.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_spend_records_subscription_id", "spend_records", ["subscription_id"], unique=False
    )
    op.create_index("ix_spend_records_job_id", "spend_records", ["job_id"], unique=False)
    op.create_index("ix_spend_records_created_at", "spend_records", ["created_at"], unique=False)

    op.create_table(
        "daily_spend_aggregates",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("spend_date", sa.Date(), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("generation_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id", "spend_date", name="uq_daily_spend_subscription_date"
        ),
    )
    op.create_index(
        "ix_daily_spend_aggregates_subscription_id",
        "daily_spend_aggregates",
        ["subscription_id"],
        unique=False,
    )

    op.create_table(
        "episodes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("content", sa.String(), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["schedule_jobs.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "ix_episodes_subscription_id", "episodes", ["subscription_id"], unique=False
    )


def downgrade() -> None:
    """Drop all scheduler tables."""
    op.drop_index("ix_episodes_subscription_id", table_name="episodes")
    op.drop_table("episodes")
    op.drop_index(
        "ix_daily_spend_aggregates_subscription_id", table_name="daily_spend_aggregates"
    )
    op.drop_table("daily_spend_aggregates")
    op.drop_index("ix_spend_records_created_at", table_name="spend_records")
    op.drop_index("ix_spend_records_job_id", table_name="spend_records")
    op.drop_index("ix_spend_records_subscription_id", table_name="spend_records")
    op.drop_table("spend_records")
    op.drop_index("uq_schedule_jobs_active_idempotency_key", table_name="schedule_jobs")
    op.drop_index("ix_schedule_jobs_claim", table_name="schedule_jobs")
    op.drop_index("ix_schedule_jobs_subscription_id", table_name="schedule_jobs")
    op.drop_table("schedule_jobs")
    op.drop_table("subscriptions")
