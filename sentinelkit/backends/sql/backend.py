"""SQL store implemented with SQLAlchemy async sessions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import and_, delete, func, insert, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlalchemy.exc import DBAPIError, IntegrityError

from .schema import JobRunLogs, JobSchedules, RateLimitRequests
from ...contracts import (
    STATUS_ERROR,
    STATUS_RUNNING,
    JobSchedule,
    RateLimitStore,
    RunLogRecord,
    RunLogSink,
    ScheduleStore,
)
from ...errors import JobNotFoundError

UTC = timezone.utc
logger = logging.getLogger(__name__)


class SQLStore(ScheduleStore, RateLimitStore, RunLogSink):
    """Shared schedule, run-log and rate-limit state in one database."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"SQLStore(engine={self.engine.url!s})"

    async def ensure_job(
        self,
        job_name: str,
        cadence_seconds: int,
        *,
        next_run_at: datetime | None = None,
        enabled: bool = True,
    ) -> JobSchedule:
        now = datetime.now(UTC)
        values = dict(
            job_name=job_name,
            cadence_seconds=cadence_seconds,
            next_run_at=next_run_at or now,
            enabled=enabled,
            force_run=False,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        async with self.sessionmaker() as session:
            if self.engine.dialect.name == "postgresql":
                await session.execute(
                    pg_insert(JobSchedules)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["job_name"])
                )
                await session.commit()
            else:
                existing = (
                    await session.execute(
                        select(JobSchedules.c.job_name).where(JobSchedules.c.job_name == job_name)
                    )
                ).first()
                if existing is None:
                    try:
                        await session.execute(insert(JobSchedules).values(**values))
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        logger.debug("job %s registered concurrently", job_name)
            row = (
                await session.execute(select(JobSchedules).where(JobSchedules.c.job_name == job_name))
            ).mappings().first()
        if row is None:  # pragma: no cover - deleted between insert and read
            raise JobNotFoundError(job_name)
        return self._row_to_schedule(row)

    async def get_job(self, job_name: str) -> JobSchedule | None:
        async with self.sessionmaker() as session:
            row = (
                await session.execute(select(JobSchedules).where(JobSchedules.c.job_name == job_name))
            ).mappings().first()
            return self._row_to_schedule(row) if row else None

    async def list_jobs(self) -> list[JobSchedule]:
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(select(JobSchedules).order_by(JobSchedules.c.job_name))
            ).mappings().all()
            return [self._row_to_schedule(row) for row in rows]

    async def claim(
        self,
        job_name: str,
        *,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        not_running = or_(
            JobSchedules.c.status.is_(None),
            JobSchedules.c.status != STATUS_RUNNING,
        )
        if stale_before is not None:
            not_running = or_(
                not_running,
                and_(
                    JobSchedules.c.locked_at.is_not(None),
                    JobSchedules.c.locked_at < stale_before,
                ),
            )
        stmt = (
            update(JobSchedules)
            .where(JobSchedules.c.job_name == job_name)
            .where(JobSchedules.c.enabled.is_(True))
            .where(or_(JobSchedules.c.force_run.is_(True), JobSchedules.c.next_run_at <= now))
            .where(or_(JobSchedules.c.backoff_until.is_(None), JobSchedules.c.backoff_until <= now))
            .where(not_running)
            .values(status=STATUS_RUNNING, locked_at=now, updated_at=now)
        )
        async with self.sessionmaker() as session:
            try:
                res = await session.execute(stmt)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return bool(res.rowcount and res.rowcount >= 1)

    async def complete(self, job_name: str, *, now: datetime, cadence_seconds: int) -> None:
        await self._update_schedule(
            job_name,
            last_run_at=now,
            next_run_at=now + timedelta(seconds=cadence_seconds),
            force_run=False,
            status=None,
            error_message=None,
            attempts=0,
            locked_at=None,
            backoff_until=None,
            updated_at=now,
        )

    async def fail(
        self,
        job_name: str,
        *,
        now: datetime,
        attempts: int,
        backoff_until: datetime,
        error_message: str,
    ) -> None:
        await self._update_schedule(
            job_name,
            last_run_at=now,
            force_run=False,
            status=STATUS_ERROR,
            error_message=error_message,
            attempts=attempts,
            backoff_until=backoff_until,
            locked_at=None,
            updated_at=now,
        )

    async def trigger(self, job_name: str) -> bool:
        return await self._flag(job_name, force_run=True)

    async def set_enabled(self, job_name: str, enabled: bool) -> bool:
        return await self._flag(job_name, enabled=enabled)

    async def check_connection(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def write(self, record: RunLogRecord) -> None:
        async with self.sessionmaker() as session:
            await session.execute(
                insert(JobRunLogs).values(
                    job_name=record.job_name,
                    status=record.status,
                    started_at=record.started_at,
                    finished_at=record.finished_at,
                    duration_ms=record.duration_ms,
                    message=record.message,
                    error_message=record.error_message,
                )
            )
            await session.commit()

    async def recent_runs(self, job_name: str, *, limit: int = 20) -> list[RunLogRecord]:
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(
                    select(JobRunLogs)
                    .where(JobRunLogs.c.job_name == job_name)
                    .order_by(JobRunLogs.c.started_at.desc(), JobRunLogs.c.id.desc())
                    .limit(limit)
                )
            ).mappings().all()
            return [
                RunLogRecord(
                    job_name=row["job_name"],
                    status=row["status"],
                    started_at=_as_utc(row["started_at"]),
                    finished_at=_as_utc(row["finished_at"]),
                    duration_ms=row["duration_ms"],
                    message=row["message"],
                    error_message=row["error_message"],
                )
                for row in rows
            ]

    async def add_request(self, key_hash: str, requested_at: datetime) -> None:
        async with self.sessionmaker() as session:
            await session.execute(
                insert(RateLimitRequests).values(key_hash=key_hash, requested_at=requested_at)
            )
            await session.commit()

    async def count_since(self, key_hash: str, since: datetime) -> int:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(func.count())
                .select_from(RateLimitRequests)
                .where(RateLimitRequests.c.key_hash == key_hash)
                .where(RateLimitRequests.c.requested_at >= since)
            )
            return int(result.scalar() or 0)

    async def oldest_since(self, key_hash: str, since: datetime) -> datetime | None:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(func.min(RateLimitRequests.c.requested_at))
                .where(RateLimitRequests.c.key_hash == key_hash)
                .where(RateLimitRequests.c.requested_at >= since)
            )
            return _as_utc(result.scalar())

    async def purge_before(self, cutoff: datetime) -> int:
        async with self.sessionmaker() as session:
            res = await session.execute(
                delete(RateLimitRequests).where(RateLimitRequests.c.requested_at < cutoff)
            )
            await session.commit()
            return int(res.rowcount or 0)

    async def _flag(self, job_name: str, **values: Any) -> bool:
        async with self.sessionmaker() as session:
            res = await session.execute(
                update(JobSchedules)
                .where(JobSchedules.c.job_name == job_name)
                .values(updated_at=datetime.now(UTC), **values)
            )
            await session.commit()
            return bool(res.rowcount)

    async def _update_schedule(self, job_name: str, **values: Any) -> None:
        async def _op() -> None:
            async with self.sessionmaker() as session:
                try:
                    res = await session.execute(
                        update(JobSchedules)
                        .where(JobSchedules.c.job_name == job_name)
                        .values(**values)
                    )
                    if res.rowcount == 0:
                        raise JobNotFoundError(job_name)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        await self._retry_with_backoff(_op)

    async def _retry_with_backoff(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
    ) -> Any:
        delay = base_delay
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except (DBAPIError, ConnectionError) as exc:
                last_exc = exc
                if attempt == attempts:
                    raise
                logger.warning(
                    "Transient backend error on attempt %s/%s; retrying in %.2fs",
                    attempt,
                    attempts,
                    delay,
                    exc_info=exc,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)
        if last_exc:
            raise last_exc

    @staticmethod
    def _row_to_schedule(row: Any) -> JobSchedule:
        return JobSchedule(
            job_name=row["job_name"],
            cadence_seconds=row["cadence_seconds"],
            next_run_at=_as_utc(row["next_run_at"]),
            enabled=bool(row["enabled"]),
            force_run=bool(row["force_run"]),
            last_run_at=_as_utc(row["last_run_at"]),
            status=row["status"],
            attempts=row["attempts"],
            backoff_until=_as_utc(row["backoff_until"]),
            locked_at=_as_utc(row["locked_at"]),
            error_message=row["error_message"],
        )


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values read back from SQLite."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
