"""In-memory backend implementation."""

from __future__ import annotations

import asyncio
import bisect
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from ..contracts import STATUS_ERROR, STATUS_RUNNING, JobSchedule, RateLimitStore, ScheduleStore


UTC = timezone.utc


class MemoryScheduleStore(ScheduleStore):
    """Schedule rows held in a dict; the claim predicate runs under one lock."""

    def __init__(self) -> None:
        self._jobs: Dict[str, JobSchedule] = {}
        self._lock = asyncio.Lock()

    async def ensure_job(
        self,
        job_name: str,
        cadence_seconds: int,
        *,
        next_run_at: datetime | None = None,
        enabled: bool = True,
    ) -> JobSchedule:
        async with self._lock:
            job = self._jobs.get(job_name)
            if job is None:
                job = JobSchedule(
                    job_name=job_name,
                    cadence_seconds=cadence_seconds,
                    next_run_at=next_run_at or datetime.now(UTC),
                    enabled=enabled,
                )
                self._jobs[job_name] = job
            return replace(job)

    async def get_job(self, job_name: str) -> JobSchedule | None:
        async with self._lock:
            job = self._jobs.get(job_name)
            return replace(job) if job else None

    async def list_jobs(self) -> list[JobSchedule]:
        async with self._lock:
            return [replace(self._jobs[name]) for name in sorted(self._jobs)]

    async def claim(
        self,
        job_name: str,
        *,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_name)
            if job is None or not job.is_due(now):
                return False
            if job.status == STATUS_RUNNING:
                stale = (
                    stale_before is not None
                    and job.locked_at is not None
                    and job.locked_at < stale_before
                )
                if not stale:
                    return False
            job.status = STATUS_RUNNING
            job.locked_at = now
            return True

    async def complete(self, job_name: str, *, now: datetime, cadence_seconds: int) -> None:
        async with self._lock:
            job = self._jobs[job_name]
            job.last_run_at = now
            job.next_run_at = now + timedelta(seconds=cadence_seconds)
            job.force_run = False
            job.status = None
            job.error_message = None
            job.attempts = 0
            job.locked_at = None
            job.backoff_until = None

    async def fail(
        self,
        job_name: str,
        *,
        now: datetime,
        attempts: int,
        backoff_until: datetime,
        error_message: str,
    ) -> None:
        async with self._lock:
            job = self._jobs[job_name]
            job.last_run_at = now
            job.force_run = False
            job.status = STATUS_ERROR
            job.error_message = error_message
            job.attempts = attempts
            job.backoff_until = backoff_until
            job.locked_at = None

    async def trigger(self, job_name: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_name)
            if job is None:
                return False
            job.force_run = True
            return True

    async def set_enabled(self, job_name: str, enabled: bool) -> bool:
        async with self._lock:
            job = self._jobs.get(job_name)
            if job is None:
                return False
            job.enabled = enabled
            return True

    async def check_connection(self) -> None:
        return None


class MemoryRateLimitStore(RateLimitStore):
    """Request timestamps per key hash, kept sorted for window queries."""

    def __init__(self) -> None:
        self._requests: Dict[str, List[datetime]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add_request(self, key_hash: str, requested_at: datetime) -> None:
        async with self._lock:
            bisect.insort(self._requests[key_hash], requested_at)

    async def count_since(self, key_hash: str, since: datetime) -> int:
        async with self._lock:
            times = self._requests.get(key_hash, [])
            return len(times) - bisect.bisect_left(times, since)

    async def oldest_since(self, key_hash: str, since: datetime) -> datetime | None:
        async with self._lock:
            times = self._requests.get(key_hash, [])
            index = bisect.bisect_left(times, since)
            return times[index] if index < len(times) else None

    async def purge_before(self, cutoff: datetime) -> int:
        async with self._lock:
            removed = 0
            for key_hash in list(self._requests):
                times = self._requests[key_hash]
                index = bisect.bisect_left(times, cutoff)
                if index:
                    del times[:index]
                    removed += index
                if not times:
                    del self._requests[key_hash]
            return removed
