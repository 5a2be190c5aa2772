"""Capacity-aware distribution of batch API requests across a key pool.

The handler looks at how much of each key's window is still free, deals the
requests out accordingly, runs them with per-request retry and returns one
result per request in input order. Individual failures become failed results;
only structural problems (no keys, duplicate ids) raise.

Capacity planning fails closed: a key whose usage cannot be read is treated as
exhausted. This is the opposite of the rate limiter's fail-open gate, because
overestimating capacity here only produces waits and failures further down.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from . import metrics
from .contracts import RateLimitTracker
from .errors import ErrorKind, Failure

T = TypeVar("T")
R = TypeVar("R")

RETRY_BASE_DELAY_S = 1.0

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchRequest(Generic[T]):
    id: str
    item: T
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchResult(Generic[R]):
    request_id: str
    success: bool
    result: R | None = None
    error: Failure | None = None
    key_used: str | None = None


@dataclass(slots=True)
class BatchDistribution:
    """Planned assignment of request ids to keys.

    ``unassigned`` holds ids that did not fit in the keys' remaining capacity
    when the plan was made.
    """

    assignments: dict[str, list[str]]
    unassigned: list[str] = field(default_factory=list)
    capacities: dict[str, int] = field(default_factory=dict)

    @property
    def total_assigned(self) -> int:
        return sum(len(ids) for ids in self.assignments.values())


class BatchOperationHandler:
    """Distribute and execute batches of keyed requests.

    Parameters:
        rate_limiter: Tracker consulted for capacity and before every attempt.
        retry_base_delay_s: First retry delay; doubles per attempt.
    """

    def __init__(
        self,
        rate_limiter: RateLimitTracker,
        *,
        retry_base_delay_s: float = RETRY_BASE_DELAY_S,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.retry_base_delay_s = retry_base_delay_s

    async def analyze_key_capacity(self, api_keys: Sequence[str]) -> dict[str, int]:
        """Return remaining requests in the current window for each key."""

        max_requests = self.rate_limiter.max_requests
        capacities: dict[str, int] = {}
        for key in api_keys:
            try:
                used = await self.rate_limiter.get_request_count(key)
            except Exception as exc:
                logger.warning("capacity lookup failed; treating key as exhausted: %s", exc)
                capacities[key] = 0
                continue
            capacities[key] = max(0, max_requests - used)
        return capacities

    async def plan_distribution(
        self, requests: Sequence[BatchRequest[T]], api_keys: Sequence[str]
    ) -> BatchDistribution:
        """Deal requests round-robin over keys that still have capacity."""

        keys = _unique_keys(api_keys)
        if not keys:
            raise ValueError("at least one API key is required")
        assignments: dict[str, list[str]] = {key: [] for key in keys}
        if not requests:
            return BatchDistribution(assignments=assignments)

        capacities = await self.analyze_key_capacity(keys)
        total_capacity = sum(capacities.values())
        if total_capacity < len(requests) / 2:
            logger.warning(
                "low capacity: %d requests available across %d keys but %d requested",
                total_capacity,
                len(keys),
                len(requests),
            )

        remaining = dict(capacities)
        unassigned: list[str] = []
        cursor = 0
        for request in requests:
            for offset in range(len(keys)):
                key = keys[(cursor + offset) % len(keys)]
                if remaining[key] > 0:
                    assignments[key].append(request.id)
                    remaining[key] -= 1
                    cursor = (cursor + offset + 1) % len(keys)
                    break
            else:
                unassigned.append(request.id)
        return BatchDistribution(
            assignments=assignments, unassigned=unassigned, capacities=capacities
        )

    async def execute_batch(
        self,
        requests: Sequence[BatchRequest[T]],
        api_keys: Sequence[str],
        handler: Callable[[T, str], Awaitable[R]],
        *,
        concurrent: bool = False,
        delay_s: float = 0.1,
        retry_attempts: int = 2,
    ) -> list[BatchResult[R]]:
        """Execute ``requests`` and return results in input order.

        With ``concurrent`` each key works through its own requests one at a
        time while keys run in parallel; otherwise requests are dispatched in
        input order with ``delay_s`` between them. Requests beyond the keys'
        planned capacity are spread over all keys and simply wait in the rate
        limiter.
        """

        keys = _unique_keys(api_keys)
        if not keys:
            raise ValueError("at least one API key is required")
        ids = [request.id for request in requests]
        if len(set(ids)) != len(ids):
            raise ValueError("batch request ids must be unique")
        if retry_attempts < 0:
            raise ValueError("retry_attempts must not be negative")

        distribution = await self.plan_distribution(requests, keys)
        lanes = {key: list(assigned) for key, assigned in distribution.assignments.items()}
        if distribution.unassigned:
            logger.info(
                "%d requests exceed current key capacity; they will wait for the rate limiter",
                len(distribution.unassigned),
            )
            for position, request_id in enumerate(distribution.unassigned):
                lanes[keys[position % len(keys)]].append(request_id)

        by_id = {request.id: request for request in requests}
        results: dict[str, BatchResult[R]] = {}

        if concurrent:

            async def _lane(key: str, lane_ids: list[str]) -> None:
                for request_id in lane_ids:
                    results[request_id] = await self._execute_with_retry(
                        by_id[request_id], key, handler, retry_attempts
                    )

            try:
                async with asyncio.TaskGroup() as group:
                    for key, lane in lanes.items():
                        if lane:
                            group.create_task(_lane(key, lane))
            except ExceptionGroup as failed:
                raise failed.exceptions[0]
        else:
            key_for = {request_id: key for key, lane in lanes.items() for request_id in lane}
            for position, request in enumerate(requests):
                if position and delay_s > 0:
                    await asyncio.sleep(delay_s)
                results[request.id] = await self._execute_with_retry(
                    request, key_for[request.id], handler, retry_attempts
                )

        ordered: list[BatchResult[R]] = []
        for request in requests:
            result = results.get(request.id)
            if result is None:  # pragma: no cover - every lane writes its ids
                logger.error("missing result for request %s", request.id)
                result = BatchResult(
                    request_id=request.id,
                    success=False,
                    error=Failure(ErrorKind.HANDLER, "request was not processed"),
                )
            ordered.append(result)
        return ordered

    async def _execute_with_retry(
        self,
        request: BatchRequest[T],
        key: str,
        handler: Callable[[T, str], Awaitable[R]],
        retry_attempts: int,
    ) -> BatchResult[R]:
        last_exc: Exception | None = None
        for attempt in range(retry_attempts + 1):
            try:
                await self.rate_limiter.wait_if_needed(key)
                value = await handler(request.item, key)
            except Exception as exc:
                last_exc = exc
                if attempt < retry_attempts:
                    delay = self.retry_base_delay_s * 2**attempt
                    logger.debug(
                        "request %s attempt %d/%d failed, retrying in %.1fs: %s",
                        request.id,
                        attempt + 1,
                        retry_attempts + 1,
                        delay,
                        exc,
                    )
                    await asyncio.sleep(delay)
                continue
            metrics.batch_items.labels(outcome="success").inc()
            return BatchResult(request_id=request.id, success=True, result=value, key_used=key)

        metrics.batch_items.labels(outcome="failed").inc()
        logger.warning(
            "request %s failed after %d attempts: %s", request.id, retry_attempts + 1, last_exc
        )
        return BatchResult(
            request_id=request.id,
            success=False,
            error=Failure.from_exception(last_exc),  # type: ignore[arg-type]
            key_used=key,
        )

    @staticmethod
    def filter_successful(results: Sequence[BatchResult[R]]) -> list[R]:
        return [result.result for result in results if result.success]  # type: ignore[misc]

    @staticmethod
    def get_summary(results: Sequence[BatchResult[Any]]) -> dict[str, float]:
        total = len(results)
        successful = sum(1 for result in results if result.success)
        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": (successful / total) * 100 if total else 0.0,
        }


def _unique_keys(api_keys: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(api_keys))
