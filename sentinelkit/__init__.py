"""Sentinelkit: database-coordinated job scheduling and rate-limited API access."""

from .batch import BatchOperationHandler, BatchRequest, BatchResult
from .client import ApiFailure, ApiSuccess, TornApiClient, is_valid_api_key
from .contracts import JobSchedule, RateLimitStore, RateLimitTracker, RunLogSink, ScheduleStore
from .errors import ErrorKind, Failure, RateLimitWaitExceeded, TransportError
from .ratelimit import RateLimiter, hash_api_key, rate_limit_pruning_job
from .rotator import ApiKeyRotator, ScopedKeyRotator
from .scheduler import JobDefinition, JobScheduler
from .settings import Settings
from .sync_guard import SyncGuard

__version__ = "0.1.0"

__all__ = [
    "ApiFailure",
    "ApiKeyRotator",
    "ApiSuccess",
    "BatchOperationHandler",
    "BatchRequest",
    "BatchResult",
    "ErrorKind",
    "Failure",
    "JobDefinition",
    "JobSchedule",
    "JobScheduler",
    "RateLimitStore",
    "RateLimitTracker",
    "RateLimitWaitExceeded",
    "RateLimiter",
    "RunLogSink",
    "ScheduleStore",
    "ScopedKeyRotator",
    "Settings",
    "SyncGuard",
    "TornApiClient",
    "TransportError",
    "__version__",
    "hash_api_key",
    "is_valid_api_key",
    "rate_limit_pruning_job",
]
