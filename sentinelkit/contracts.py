"""Core contracts used by Sentinelkit components.

This module exposes explicit abstract base classes rather than ``typing.Protocol``
interfaces. Subclassing these contracts forces storage backends and rate-limit
trackers to provide the full API at definition time instead of relying on
structural typing that would otherwise be enforced only by optional type
checking tools.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

STATUS_RUNNING = "running"
STATUS_ERROR = "error"


@dataclass(slots=True)
class JobSchedule:
    """Shared scheduling state for one named job.

    One row exists per job and every process running the scheduler reads and
    mutates the same row. ``status`` is ``None`` when idle.
    """

    job_name: str
    cadence_seconds: int
    next_run_at: datetime
    enabled: bool = True
    force_run: bool = False
    last_run_at: datetime | None = None
    status: str | None = None
    attempts: int = 0
    backoff_until: datetime | None = None
    locked_at: datetime | None = None
    error_message: str | None = None

    def is_due(self, now: datetime) -> bool:
        """Return ``True`` when the job is eligible to be claimed at ``now``."""

        if not self.enabled:
            return False
        if not (self.force_run or self.next_run_at <= now):
            return False
        return self.backoff_until is None or self.backoff_until <= now

    @property
    def is_claimed(self) -> bool:
        return self.status == STATUS_RUNNING


@dataclass(slots=True)
class RunLogRecord:
    job_name: str
    status: str
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    message: str | None = None
    error_message: str | None = None


class ScheduleStore(ABC):
    """Interface for the shared job schedule table."""

    @abstractmethod
    async def ensure_job(
        self,
        job_name: str,
        cadence_seconds: int,
        *,
        next_run_at: datetime | None = None,
        enabled: bool = True,
    ) -> JobSchedule:
        """Create the row for ``job_name`` if absent and return the stored row.

        Existing rows are never overwritten, so calling this from every
        process on startup is safe.
        """

    @abstractmethod
    async def get_job(self, job_name: str) -> JobSchedule | None:
        """Return the row for ``job_name`` or ``None`` when unknown."""

    @abstractmethod
    async def list_jobs(self) -> list[JobSchedule]:
        """Return every job row ordered by name."""

    @abstractmethod
    async def claim(
        self,
        job_name: str,
        *,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        """Atomically mark a due job as running.

        Implementations **must** perform a single conditional update whose
        predicate is the due invariant plus "not already running" and report
        ``True`` only when that update affected a row. When ``stale_before``
        is given, a running row whose ``locked_at`` is older than it may be
        reclaimed.
        """

    @abstractmethod
    async def complete(self, job_name: str, *, now: datetime, cadence_seconds: int) -> None:
        """Record a successful (or skipped) run and schedule the next one."""

    @abstractmethod
    async def fail(
        self,
        job_name: str,
        *,
        now: datetime,
        attempts: int,
        backoff_until: datetime,
        error_message: str,
    ) -> None:
        """Record a failed run and suppress eligibility until ``backoff_until``."""

    @abstractmethod
    async def trigger(self, job_name: str) -> bool:
        """Set ``force_run`` for ``job_name``; return ``False`` if it is unknown."""

    @abstractmethod
    async def set_enabled(self, job_name: str, enabled: bool) -> bool:
        """Enable or disable ``job_name``; return ``False`` if it is unknown."""

    @abstractmethod
    async def check_connection(self) -> None:
        """Raise if the store cannot be reached."""


class RateLimitStore(ABC):
    """Append-only log of observed requests keyed by a hashed API key."""

    @abstractmethod
    async def add_request(self, key_hash: str, requested_at: datetime) -> None:
        """Append one request record."""

    @abstractmethod
    async def count_since(self, key_hash: str, since: datetime) -> int:
        """Count records for ``key_hash`` with ``requested_at >= since``."""

    @abstractmethod
    async def oldest_since(self, key_hash: str, since: datetime) -> datetime | None:
        """Return the earliest ``requested_at`` at or after ``since``."""

    @abstractmethod
    async def purge_before(self, cutoff: datetime) -> int:
        """Delete records older than ``cutoff`` and return how many went."""


class RunLogSink(ABC):
    """Destination for per-run log entries produced by the scheduler."""

    @abstractmethod
    async def write(self, record: RunLogRecord) -> None:
        """Persist ``record`` in the sink."""


class RateLimitTracker(ABC):
    """Gate consulted before and after every external API request."""

    max_requests: int

    @abstractmethod
    async def wait_if_needed(self, api_key: str) -> None:
        """Suspend until a request under ``api_key`` fits in the window."""

    @abstractmethod
    async def record_request(self, api_key: str) -> None:
        """Record that a request under ``api_key`` was made."""

    @abstractmethod
    async def get_request_count(self, api_key: str) -> int:
        """Return the number of requests in the current window."""
