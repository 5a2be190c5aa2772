"""SQLAlchemy Core schema for job schedules, run logs and rate-limit records."""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)

metadata = MetaData()

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_ID = BigInteger().with_variant(Integer, "sqlite")

JobSchedules = Table(
    "job_schedules",
    metadata,
    Column("job_name", String(128), primary_key=True),
    Column("enabled", Boolean, nullable=False, server_default="1"),
    Column("cadence_seconds", Integer, nullable=False),
    Column("next_run_at", DateTime(timezone=True), nullable=False),
    Column("force_run", Boolean, nullable=False, server_default="0"),
    Column("last_run_at", DateTime(timezone=True)),
    Column("status", String(16)),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("backoff_until", DateTime(timezone=True)),
    Column("locked_at", DateTime(timezone=True)),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    CheckConstraint(
        "status IS NULL OR status IN ('running','error')",
        name="job_schedule_status_chk",
    ),
    CheckConstraint("cadence_seconds > 0", name="job_schedule_cadence_chk"),
)

JobRunLogs = Table(
    "job_run_logs",
    metadata,
    Column("id", _ID, primary_key=True, autoincrement=True),
    Column("job_name", String(128), nullable=False),
    Column("status", String(16), nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True), nullable=False),
    Column("duration_ms", Integer, nullable=False),
    Column("message", Text),
    Column("error_message", Text),
    CheckConstraint("status IN ('success','error')", name="job_run_log_status_chk"),
)

RateLimitRequests = Table(
    "rate_limit_requests",
    metadata,
    Column("id", _ID, primary_key=True, autoincrement=True),
    Column("key_hash", String(64), nullable=False),
    Column("requested_at", DateTime(timezone=True), nullable=False),
)

Index("idx_job_run_logs_job_started", JobRunLogs.c.job_name, JobRunLogs.c.started_at)

Index(
    "idx_rate_limit_requests_key_time",
    RateLimitRequests.c.key_hash,
    RateLimitRequests.c.requested_at,
)

Index("idx_rate_limit_requests_time", RateLimitRequests.c.requested_at)

__all__ = ["JobRunLogs", "JobSchedules", "RateLimitRequests", "metadata"]
