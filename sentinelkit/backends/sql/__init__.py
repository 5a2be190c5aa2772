"""SQL backend helpers."""

from .backend import SQLStore
from .schema import JobRunLogs, JobSchedules, RateLimitRequests, metadata

__all__ = ["SQLStore", "JobRunLogs", "JobSchedules", "RateLimitRequests", "metadata"]
