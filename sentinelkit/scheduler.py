"""Distributed polling scheduler built on :mod:`asyncio` primitives.

Every process that runs the scheduler polls the same shared schedule rows.
The only coordination point is :meth:`ScheduleStore.claim`, a single
conditional update: whichever process flips a due row to ``running`` first
runs the handler, everybody else sees zero affected rows and moves on.
Callers signal termination via :meth:`JobScheduler.request_stop` and await
teardown with :meth:`JobScheduler.wait_stopped`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from . import metrics
from .contracts import STATUS_ERROR, JobSchedule, RunLogRecord, RunLogSink, ScheduleStore
from .errors import ErrorKind, Failure

UTC = timezone.utc
DEFAULT_POLL_INTERVAL_S = 5.0
BACKOFF_BASE_S = 60
BACKOFF_CAP_S = 60 * 60

JobHandler = Callable[[], Awaitable["bool | None"]]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobDefinition:
    """A named recurring job.

    ``handler`` returning ``False`` marks the run as skipped: the schedule
    still advances but no run log entry is written. Any exception is a
    failure and puts the job into backoff.
    """

    name: str
    cadence_seconds: int
    handler: JobHandler
    timeout: float | None = None
    run_on_start: bool = False
    next_run_at: datetime | None = None


class TickOutcome(str, Enum):
    NOT_DUE = "not_due"
    CLAIM_LOST = "claim_lost"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    ERROR = "error"


def compute_backoff(attempts: int) -> timedelta:
    """Return the delay before a job that failed ``attempts`` times may rerun."""

    return timedelta(seconds=min(2**attempts * BACKOFF_BASE_S, BACKOFF_CAP_S))


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobScheduler:
    def __init__(
        self,
        store: ScheduleStore,
        jobs: Iterable[JobDefinition],
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        log_sink: RunLogSink | None = None,
        stale_claim_after: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.jobs = list(jobs)
        self.poll_interval = poll_interval
        self.log_sink = log_sink
        self.stale_claim_after = stale_claim_after
        self._clock = clock or _utcnow
        self._stop = asyncio.Event()
        self._stopped = asyncio.Event()
        self._validate_configuration()

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            f"JobScheduler(jobs={[job.name for job in self.jobs]}, "
            f"poll_interval={self.poll_interval})"
        )

    def request_stop(self) -> None:
        self._stop.set()

    async def wait_stopped(self) -> None:
        """Wait until every poll loop has exited."""

        await self._stopped.wait()

    async def register(self) -> list[JobSchedule]:
        """Create schedule rows for jobs that do not have one yet."""

        rows = []
        for job in self.jobs:
            row = await self.store.ensure_job(
                job.name, job.cadence_seconds, next_run_at=job.next_run_at or self._clock()
            )
            logger.debug("registered job %s (cadence %ss)", job.name, row.cadence_seconds)
            rows.append(row)
        return rows

    async def run(self) -> None:
        await self.register()
        logger.info(
            "scheduler started with %d jobs, polling every %.2fs",
            len(self.jobs),
            self.poll_interval,
        )
        try:
            async with asyncio.TaskGroup() as tg:
                for job in self.jobs:
                    if job.run_on_start:
                        tg.create_task(self._run_on_start(job))
                    tg.create_task(self._poll_loop(job))
        finally:
            self._stopped.set()
            logger.info("scheduler stopped")

    async def _poll_loop(self, job: JobDefinition) -> None:
        while not self._stop.is_set():
            await self.tick(job)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

    async def _run_on_start(self, job: JobDefinition) -> None:
        logger.info("running job %s on start", job.name)
        try:
            await self._invoke(job)
        except Exception:
            logger.error("start-up run of job %s failed", job.name, exc_info=True)

    async def tick(self, job: JobDefinition) -> TickOutcome:
        """Run one poll cycle for ``job``; never raises ``Exception``."""

        try:
            now = self._clock()
            row = await self.store.get_job(job.name)
            if row is None:
                row = await self.store.ensure_job(
                    job.name, job.cadence_seconds, next_run_at=job.next_run_at or self._clock()
                )
            if not row.is_due(now):
                return TickOutcome.NOT_DUE
            stale_before = None
            if self.stale_claim_after is not None:
                stale_before = now - timedelta(seconds=self.stale_claim_after)
            if not await self.store.claim(job.name, now=now, stale_before=stale_before):
                logger.debug("job %s claimed elsewhere", job.name)
                metrics.claims_lost.labels(job=job.name).inc()
                return TickOutcome.CLAIM_LOST
            return await self._run_claimed(job, row)
        except Exception as exc:
            logger.warning("scheduler tick for %s failed: %s", job.name, exc, exc_info=True)
            metrics.scheduler_tick_errors.labels(job=job.name).inc()
            return TickOutcome.ERROR

    async def _run_claimed(self, job: JobDefinition, row: JobSchedule) -> TickOutcome:
        logger.info("claimed job %s", job.name)
        started_at = self._clock()
        started = time.perf_counter()
        scope: asyncio.Timeout | None = None
        try:
            if job.timeout is None:
                result = await job.handler()
            else:
                async with asyncio.timeout(job.timeout) as scope:
                    result = await job.handler()
            duration = time.perf_counter() - started
            finished_at = self._clock()
            # A failed completion write must still release the claim via fail().
            await self.store.complete(
                job.name, now=finished_at, cadence_seconds=row.cadence_seconds
            )
        except Exception as exc:
            if scope is not None and scope.expired():
                failure = Failure(ErrorKind.TIMEOUT, f"job timed out after {job.timeout}s")
            else:
                logger.error("job %s failed", job.name, exc_info=True)
                failure = Failure.from_exception(exc)
            return await self._record_failure(job, row, started_at, started, failure)

        metrics.job_run_duration.labels(job=job.name).observe(duration)
        if result is False:
            logger.debug("job %s skipped", job.name)
            metrics.job_runs.labels(job=job.name, outcome="skipped").inc()
            return TickOutcome.SKIPPED

        duration_ms = int(duration * 1000)
        logger.info("job %s succeeded in %dms", job.name, duration_ms)
        metrics.job_runs.labels(job=job.name, outcome="success").inc()
        await self._write_log(
            RunLogRecord(
                job_name=job.name,
                status="success",
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=duration_ms,
                message=f"completed in {duration_ms}ms",
            )
        )
        return TickOutcome.SUCCEEDED

    async def _invoke(self, job: JobDefinition) -> Any:
        if job.timeout is None:
            return await job.handler()
        async with asyncio.timeout(job.timeout):
            return await job.handler()

    async def _record_failure(
        self,
        job: JobDefinition,
        row: JobSchedule,
        started_at: datetime,
        started: float,
        failure: Failure,
    ) -> TickOutcome:
        duration = time.perf_counter() - started
        finished_at = self._clock()
        attempts = row.attempts + 1
        backoff = compute_backoff(attempts)
        logger.error(
            "job %s failed (attempt %d), retrying after %ds: %s",
            job.name,
            attempts,
            int(backoff.total_seconds()),
            failure,
        )
        await self.store.fail(
            job.name,
            now=finished_at,
            attempts=attempts,
            backoff_until=finished_at + backoff,
            error_message=failure.message,
        )
        metrics.job_runs.labels(job=job.name, outcome="error").inc()
        metrics.job_run_duration.labels(job=job.name).observe(duration)
        await self._write_log(
            RunLogRecord(
                job_name=job.name,
                status="error",
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=int(duration * 1000),
                error_message=str(failure),
            )
        )
        return TickOutcome.FAILED

    async def _write_log(self, record: RunLogRecord) -> None:
        if self.log_sink is None:
            return
        try:
            await self.log_sink.write(record)
        except Exception as exc:
            logger.warning("failed to write run log for %s: %s", record.job_name, exc, exc_info=True)

    async def check_health(self) -> dict[str, Any]:
        try:
            await self.store.check_connection()
            rows = {row.job_name: row for row in await self.store.list_jobs()}
        except Exception as exc:
            return {"status": "unhealthy", "reason": repr(exc)}

        jobs: dict[str, Any] = {}
        healthy = True
        for job in self.jobs:
            row = rows.get(job.name)
            if row is None:
                healthy = False
                jobs[job.name] = {"registered": False}
                continue
            if row.status == STATUS_ERROR:
                healthy = False
            jobs[job.name] = {
                "registered": True,
                "enabled": row.enabled,
                "status": row.status,
                "attempts": row.attempts,
                "next_run_at": row.next_run_at.isoformat(),
                "backoff_until": row.backoff_until.isoformat() if row.backoff_until else None,
                "error_message": row.error_message,
            }
        return {"status": "healthy" if healthy else "unhealthy", "jobs": jobs}

    def _validate_configuration(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be greater than 0")
        if self.stale_claim_after is not None and self.stale_claim_after <= 0:
            raise ValueError("stale_claim_after must be greater than 0 when provided")
        seen: set[str] = set()
        for job in self.jobs:
            if not job.name:
                raise ValueError("job name must not be empty")
            if job.name in seen:
                raise ValueError(f"duplicate job name {job.name!r}")
            seen.add(job.name)
            if job.cadence_seconds <= 0:
                raise ValueError(f"cadence_seconds for {job.name!r} must be greater than 0")
            if job.timeout is not None and job.timeout <= 0:
                raise ValueError(f"timeout for {job.name!r} must be greater than 0 when provided")
