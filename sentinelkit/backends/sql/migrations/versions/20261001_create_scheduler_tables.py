"""Create job schedule, run log and rate-limit request tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261001_create_scheduler_tables"
down_revision = None
branch_labels = None
depends_on = None

_ID = sa.BigInteger().with_variant(sa.Integer, "sqlite")


def upgrade() -> None:
    op.create_table(
        "job_schedules",
        sa.Column("job_name", sa.String(128), primary_key=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default="1"),
        sa.Column("cadence_seconds", sa.Integer, nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("force_run", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(16)),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("backoff_until", sa.DateTime(timezone=True)),
        sa.Column("locked_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.CheckConstraint(
            "status IS NULL OR status IN ('running','error')",
            name="job_schedule_status_chk",
        ),
        sa.CheckConstraint("cadence_seconds > 0", name="job_schedule_cadence_chk"),
    )
    op.create_table(
        "job_run_logs",
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("job_name", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=False),
        sa.Column("message", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.CheckConstraint("status IN ('success','error')", name="job_run_log_status_chk"),
    )
    op.create_table(
        "rate_limit_requests",
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_job_run_logs_job_started",
        "job_run_logs",
        ["job_name", "started_at"],
    )
    op.create_index(
        "idx_rate_limit_requests_key_time",
        "rate_limit_requests",
        ["key_hash", "requested_at"],
    )
    op.create_index(
        "idx_rate_limit_requests_time",
        "rate_limit_requests",
        ["requested_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_rate_limit_requests_time", table_name="rate_limit_requests")
    op.drop_index("idx_rate_limit_requests_key_time", table_name="rate_limit_requests")
    op.drop_index("idx_job_run_logs_job_started", table_name="job_run_logs")
    op.drop_table("rate_limit_requests")
    op.drop_table("job_run_logs")
    op.drop_table("job_schedules")
