"""Tests for the in-memory stores and run log sink."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sentinelkit.backends.memory import MemoryRateLimitStore, MemoryScheduleStore
from sentinelkit.contracts import RunLogRecord
from sentinelkit.logging.memory import MemoryRunLogSink


UTC = timezone.utc
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_memory_schedule_store_lifecycle() -> None:
    async def _run() -> None:
        store = MemoryScheduleStore()
        created = await store.ensure_job("sync", 600, next_run_at=NOW)
        again = await store.ensure_job("sync", 60, next_run_at=NOW + timedelta(days=1))
        assert again.cadence_seconds == 600
        assert again.next_run_at == created.next_run_at
        assert await store.get_job("missing") is None

        # Returned rows are snapshots, not live references.
        created.attempts = 99
        assert (await store.get_job("sync")).attempts == 0  # type: ignore[union-attr]

        assert await store.claim("sync", now=NOW) is True
        assert await store.claim("sync", now=NOW) is False

        await store.fail(
            "sync",
            now=NOW,
            attempts=1,
            backoff_until=NOW + timedelta(seconds=120),
            error_message="boom",
        )
        row = await store.get_job("sync")
        assert row is not None
        assert (row.status, row.attempts, row.locked_at) == ("error", 1, None)
        assert await store.claim("sync", now=NOW + timedelta(seconds=60)) is False
        assert await store.claim("sync", now=NOW + timedelta(seconds=120)) is True

        await store.complete("sync", now=NOW, cadence_seconds=600)
        row = await store.get_job("sync")
        assert row is not None
        assert row.status is None and row.attempts == 0 and row.backoff_until is None
        assert row.next_run_at == NOW + timedelta(seconds=600)

    asyncio.run(_run())


def test_memory_schedule_store_trigger_and_enable() -> None:
    async def _run() -> None:
        store = MemoryScheduleStore()
        await store.ensure_job("b", 60, next_run_at=NOW + timedelta(hours=1))
        await store.ensure_job("a", 60, next_run_at=NOW + timedelta(hours=1))
        assert [row.job_name for row in await store.list_jobs()] == ["a", "b"]

        assert await store.claim("a", now=NOW) is False
        assert await store.trigger("a") is True
        assert await store.trigger("missing") is False
        assert await store.set_enabled("a", False) is True
        assert await store.claim("a", now=NOW) is False
        assert await store.set_enabled("a", True) is True
        assert await store.claim("a", now=NOW) is True
        assert await store.set_enabled("missing", True) is False
        await store.check_connection()

    asyncio.run(_run())


def test_memory_schedule_store_complete_unknown_job() -> None:
    async def _run() -> None:
        store = MemoryScheduleStore()
        with pytest.raises(KeyError):
            await store.complete("missing", now=NOW, cadence_seconds=60)

    asyncio.run(_run())


def test_memory_rate_limit_store_window_queries() -> None:
    async def _run() -> None:
        store = MemoryRateLimitStore()
        for offset in (30, 10, 50, 70):
            await store.add_request("k1", NOW - timedelta(seconds=offset))
        await store.add_request("k2", NOW)

        since = NOW - timedelta(seconds=60)
        assert await store.count_since("k1", since) == 3
        assert await store.oldest_since("k1", since) == NOW - timedelta(seconds=50)
        assert await store.count_since("unknown", since) == 0
        assert await store.oldest_since("unknown", since) is None

        removed = await store.purge_before(since)
        assert removed == 1
        assert await store.count_since("k1", NOW - timedelta(days=1)) == 3
        assert await store.purge_before(NOW + timedelta(seconds=1)) == 4
        assert await store.count_since("k2", NOW - timedelta(days=1)) == 0

    asyncio.run(_run())


def test_memory_run_log_sink_enforces_capacity() -> None:
    async def _run() -> None:
        sink = MemoryRunLogSink(max_items=2)
        for idx in range(3):
            await sink.write(
                RunLogRecord(
                    job_name="sync",
                    status="success",
                    started_at=NOW,
                    finished_at=NOW,
                    duration_ms=idx,
                )
            )
        logs = await sink.get("sync")
        assert [entry.duration_ms for entry in logs] == [1, 2]
        assert await sink.get("other") == []

    asyncio.run(_run())


def test_memory_run_log_sink_rejects_bad_capacity() -> None:
    with pytest.raises(ValueError):
        MemoryRunLogSink(max_items=0)
