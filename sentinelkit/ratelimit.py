"""Store-backed sliding-window rate limiting for external API keys.

Every process that talks to the external API shares one request log, so the
bot and any number of workers respect the same per-key budget. Raw keys never
reach the store; records are keyed by a peppered SHA-256 of the key.

Reading the window count fails open (a store error counts as zero usage)
because the external API enforces its own limit and rejects with a distinct
error code. Purging expired records is best effort.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

from . import metrics
from .contracts import RateLimitStore, RateLimitTracker
from .errors import RateLimitWaitExceeded
from .scheduler import JobDefinition
from .sync_guard import SyncGuard

if TYPE_CHECKING:  # pragma: no cover
    from .settings import Settings

UTC = timezone.utc
DEFAULT_WINDOW_S = 60.0
# The external API documents 100 requests/minute per key; stay at half.
DEFAULT_MAX_REQUESTS = 50
WAIT_BUFFER_S = 0.1
DEFAULT_MAX_WAIT_CYCLES = 10
PRUNE_RETENTION_S = 2 * 60 * 60
PRUNE_CADENCE_S = 60 * 60
PRUNE_JOB_NAME = "rate_limit_pruning"

logger = logging.getLogger(__name__)


def hash_api_key(api_key: str, pepper: str) -> str:
    """Return the one-way hash used to key rate-limit records."""

    return hashlib.sha256((api_key + pepper).encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateLimiter(RateLimitTracker):
    """Per-key sliding window limiter backed by a :class:`RateLimitStore`.

    Parameters:
        store: Shared request log.
        hash_pepper: Secret mixed into key hashes; required.
        max_requests: Requests allowed per key inside one window.
        window_s: Length of the trailing window in seconds.
        max_wait_cycles: Re-checks allowed in :meth:`wait_if_needed` before
            :class:`RateLimitWaitExceeded` is raised.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        hash_pepper: str,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_s: float = DEFAULT_WINDOW_S,
        max_wait_cycles: int = DEFAULT_MAX_WAIT_CYCLES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not hash_pepper:
            raise ValueError("hash_pepper is required for rate limiting")
        if max_requests <= 0:
            raise ValueError("max_requests must be greater than 0")
        if window_s <= 0:
            raise ValueError("window_s must be greater than 0")
        if max_wait_cycles < 0:
            raise ValueError("max_wait_cycles must not be negative")
        self.store = store
        self.max_requests = max_requests
        self.window_s = window_s
        self.max_wait_cycles = max_wait_cycles
        self._hash_pepper = hash_pepper
        self._clock = clock or _utcnow
        self._purge_tasks: set[asyncio.Task[int]] = set()

    @classmethod
    def from_settings(
        cls, store: RateLimitStore, settings: "Settings", **kwargs: Any
    ) -> "RateLimiter":
        """Build a limiter from ``API_KEY_HASH_PEPPER`` and the rate-limit settings."""

        if not settings.hash_pepper:
            raise ValueError("API_KEY_HASH_PEPPER is required for rate limiting")
        return cls(
            store,
            hash_pepper=settings.hash_pepper,
            max_requests=settings.rate_limit_max,
            window_s=settings.rate_limit_window,
            **kwargs,
        )

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            f"RateLimiter(max_requests={self.max_requests}, window_s={self.window_s}, "
            f"max_wait_cycles={self.max_wait_cycles})"
        )

    def key_hash(self, api_key: str) -> str:
        return hash_api_key(api_key, self._hash_pepper)

    def _window_start(self) -> datetime:
        return self._clock() - timedelta(seconds=self.window_s)

    async def record_request(self, api_key: str) -> None:
        try:
            await self.store.add_request(self.key_hash(api_key), self._clock())
        except Exception as exc:
            logger.warning("failed to record rate-limit request: %s", exc, exc_info=True)

    async def get_request_count(self, api_key: str) -> int:
        try:
            return await self.store.count_since(self.key_hash(api_key), self._window_start())
        except Exception as exc:
            logger.warning(
                "failed to count rate-limit requests, assuming none: %s", exc, exc_info=True
            )
            return 0

    async def is_rate_limited(self, api_key: str) -> bool:
        return await self.get_request_count(api_key) >= self.max_requests

    async def get_oldest_request(self, api_key: str) -> datetime | None:
        try:
            return await self.store.oldest_since(self.key_hash(api_key), self._window_start())
        except Exception as exc:
            logger.warning("failed to read oldest rate-limit request: %s", exc, exc_info=True)
            return None

    async def cleanup_old_requests(self) -> int:
        """Delete records that fell out of the window; errors are logged."""

        try:
            return await self.store.purge_before(self._window_start())
        except Exception as exc:
            logger.warning("rate-limit purge failed: %s", exc, exc_info=True)
            return 0

    async def wait_if_needed(self, api_key: str) -> None:
        """Sleep until a request under ``api_key`` fits in the window.

        Does not record the request; callers record after a successful call.
        """

        self._schedule_purge()
        for cycle in range(self.max_wait_cycles + 1):
            count = await self.get_request_count(api_key)
            if count < self.max_requests:
                return
            oldest = await self.get_oldest_request(api_key)
            if oldest is None:
                return
            age = (self._clock() - oldest).total_seconds()
            wait = self.window_s - age + WAIT_BUFFER_S
            if wait <= 0:
                return
            if cycle == self.max_wait_cycles:
                raise RateLimitWaitExceeded(self.key_hash(api_key), cycle)
            logger.info(
                "rate limit reached (%d/%d), waiting %.2fs", count, self.max_requests, wait
            )
            metrics.rate_limit_waits.inc()
            metrics.rate_limit_wait_seconds.observe(wait)
            await asyncio.sleep(wait)

    def _schedule_purge(self) -> None:
        task = asyncio.create_task(self.cleanup_old_requests())
        self._purge_tasks.add(task)
        task.add_done_callback(self._purge_tasks.discard)

    async def aclose(self) -> None:
        """Wait for in-flight purge tasks."""

        if self._purge_tasks:
            await asyncio.gather(*self._purge_tasks, return_exceptions=True)


def rate_limit_pruning_job(
    store: RateLimitStore,
    *,
    retention_s: float = PRUNE_RETENTION_S,
    cadence_seconds: int = PRUNE_CADENCE_S,
    guard: SyncGuard | None = None,
    name: str = PRUNE_JOB_NAME,
    clock: Callable[[], datetime] | None = None,
) -> JobDefinition:
    """Build the scheduled job that trims old rate-limit records."""

    guard = guard or SyncGuard()
    now = clock or _utcnow

    async def _prune() -> None:
        cutoff = now() - timedelta(seconds=retention_s)
        removed = await store.purge_before(cutoff)
        logger.info("pruned %d rate-limit records older than %s", removed, cutoff.isoformat())

    async def _handler() -> bool:
        return await guard.execute(name, timeout=30.0, handler=_prune)

    return JobDefinition(name=name, cadence_seconds=cadence_seconds, handler=_handler)
