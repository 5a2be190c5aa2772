"""Tests for the SQL store using a synchronous SQLite engine wrapper."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from sentinelkit.backends.sql.backend import SQLStore, _as_utc
from sentinelkit.backends.sql.schema import JobSchedules, metadata
from sentinelkit.contracts import RunLogRecord
from sentinelkit.errors import JobNotFoundError

UTC = timezone.utc
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _AsyncSessionWrapper:
    def __init__(self, sync_session):
        self._session = sync_session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._session.close()

    async def execute(self, statement, params=None):
        return self._session.execute(statement, params or {})

    async def commit(self) -> None:
        self._session.commit()

    async def rollback(self) -> None:
        self._session.rollback()


def _make_store() -> SQLStore:
    sync_engine = create_engine("sqlite:///:memory:", future=True)
    metadata.create_all(sync_engine)
    SyncSession = sessionmaker(sync_engine, future=True)
    store = object.__new__(SQLStore)
    store.engine = SimpleNamespace(dialect=sync_engine.dialect)
    store.sessionmaker = lambda: _AsyncSessionWrapper(SyncSession())
    return store


def test_sql_store_schedule_lifecycle() -> None:
    async def _run() -> None:
        store = _make_store()
        row = await store.ensure_job("sync", 600, next_run_at=NOW)
        assert row.next_run_at == NOW
        assert row.enabled is True and row.status is None and row.attempts == 0

        again = await store.ensure_job("sync", 60, next_run_at=NOW + timedelta(days=1))
        assert again.cadence_seconds == 600
        assert again.next_run_at == NOW

        assert await store.claim("sync", now=NOW) is True
        assert await store.claim("sync", now=NOW) is False
        claimed = await store.get_job("sync")
        assert claimed is not None
        assert claimed.status == "running" and claimed.locked_at == NOW

        later = NOW + timedelta(seconds=5)
        await store.complete("sync", now=later, cadence_seconds=600)
        done = await store.get_job("sync")
        assert done is not None
        assert done.status is None and done.locked_at is None
        assert done.last_run_at == later
        assert done.next_run_at == later + timedelta(seconds=600)

    asyncio.run(_run())


def test_sql_store_claim_respects_due_invariant() -> None:
    async def _run() -> None:
        store = _make_store()
        await store.ensure_job("future", 60, next_run_at=NOW + timedelta(hours=1))
        assert await store.claim("future", now=NOW) is False
        assert await store.trigger("future") is True
        assert await store.claim("future", now=NOW) is True

        await store.ensure_job("off", 60, next_run_at=NOW, enabled=False)
        assert await store.claim("off", now=NOW) is False
        assert await store.set_enabled("off", True) is True
        assert await store.claim("off", now=NOW) is True

        assert await store.claim("missing", now=NOW) is False
        assert await store.trigger("missing") is False
        assert await store.set_enabled("missing", False) is False

    asyncio.run(_run())


def test_sql_store_failure_and_backoff() -> None:
    async def _run() -> None:
        store = _make_store()
        await store.ensure_job("sync", 60, next_run_at=NOW)
        await store.trigger("sync")
        assert await store.claim("sync", now=NOW) is True
        await store.fail(
            "sync",
            now=NOW,
            attempts=3,
            backoff_until=NOW + timedelta(seconds=480),
            error_message="boom",
        )
        row = await store.get_job("sync")
        assert row is not None
        assert row.status == "error"
        assert row.attempts == 3
        assert row.force_run is False
        assert row.locked_at is None
        assert row.backoff_until == NOW + timedelta(seconds=480)
        assert row.error_message == "boom"

        assert await store.claim("sync", now=NOW + timedelta(seconds=479)) is False
        assert await store.claim("sync", now=NOW + timedelta(seconds=480)) is True

    asyncio.run(_run())


def test_sql_store_reclaims_stale_claims_when_asked() -> None:
    async def _run() -> None:
        store = _make_store()
        await store.ensure_job("sync", 60, next_run_at=NOW)
        assert await store.claim("sync", now=NOW) is True
        later = NOW + timedelta(hours=1)
        assert await store.claim("sync", now=later) is False
        assert await store.claim("sync", now=later, stale_before=NOW - timedelta(minutes=1)) is False
        assert await store.claim("sync", now=later, stale_before=later - timedelta(minutes=10)) is True
        row = await store.get_job("sync")
        assert row is not None and row.locked_at == later

    asyncio.run(_run())


def test_sql_store_update_unknown_job_raises() -> None:
    async def _run() -> None:
        store = _make_store()
        with pytest.raises(JobNotFoundError):
            await store.complete("missing", now=NOW, cadence_seconds=60)

    asyncio.run(_run())


def test_sql_store_list_jobs_is_sorted() -> None:
    async def _run() -> None:
        store = _make_store()
        await store.ensure_job("beta", 60, next_run_at=NOW)
        await store.ensure_job("alpha", 60, next_run_at=NOW)
        assert [row.job_name for row in await store.list_jobs()] == ["alpha", "beta"]

    asyncio.run(_run())


def test_sql_store_rate_limit_records() -> None:
    async def _run() -> None:
        store = _make_store()
        for offset in (70, 50, 30, 10):
            await store.add_request("hash-a", NOW - timedelta(seconds=offset))
        await store.add_request("hash-b", NOW)

        since = NOW - timedelta(seconds=60)
        assert await store.count_since("hash-a", since) == 3
        assert await store.oldest_since("hash-a", since) == NOW - timedelta(seconds=50)
        assert await store.oldest_since("hash-c", since) is None

        assert await store.purge_before(since) == 1
        assert await store.count_since("hash-a", NOW - timedelta(days=1)) == 3
        assert await store.count_since("hash-b", since) == 1

    asyncio.run(_run())


def test_sql_store_run_logs() -> None:
    async def _run() -> None:
        store = _make_store()
        for idx, status in enumerate(("success", "error")):
            await store.write(
                RunLogRecord(
                    job_name="sync",
                    status=status,
                    started_at=NOW + timedelta(seconds=idx),
                    finished_at=NOW + timedelta(seconds=idx, milliseconds=250),
                    duration_ms=250,
                    message="ok" if status == "success" else None,
                    error_message="boom" if status == "error" else None,
                )
            )
        runs = await store.recent_runs("sync")
        assert [run.status for run in runs] == ["error", "success"]
        assert runs[0].error_message == "boom"
        assert runs[1].started_at == NOW
        assert await store.recent_runs("other") == []

    asyncio.run(_run())


def test_sql_store_retries_transient_errors(monkeypatch) -> None:
    async def _run() -> None:
        store = _make_store()
        sleeps: list[float] = []
        attempts: list[int] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        async def flaky() -> str:
            attempts.append(1)
            if len(attempts) < 3:
                raise OperationalError("UPDATE", {}, Exception("locked"))
            return "ok"

        monkeypatch.setattr("sentinelkit.backends.sql.backend.asyncio.sleep", fake_sleep)
        assert await store._retry_with_backoff(flaky) == "ok"
        assert sleeps == [0.1, 0.2]

        async def always_down() -> None:
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await store._retry_with_backoff(always_down, attempts=2)

    asyncio.run(_run())


def test_sql_store_ensure_job_prefers_on_conflict_for_postgres() -> None:
    async def _run() -> None:
        store = _make_store()
        executed: list[object] = []

        class _Recorder:
            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return None

            async def execute(self, statement, params=None):
                executed.append(statement)
                return SimpleNamespace(
                    mappings=lambda: SimpleNamespace(
                        first=lambda: {
                            "job_name": "sync",
                            "cadence_seconds": 60,
                            "next_run_at": NOW,
                            "enabled": True,
                            "force_run": False,
                            "last_run_at": None,
                            "status": None,
                            "attempts": 0,
                            "backoff_until": None,
                            "locked_at": None,
                            "error_message": None,
                        }
                    )
                )

            async def commit(self) -> None:
                return None

        store.engine = SimpleNamespace(dialect=SimpleNamespace(name="postgresql"))
        store.sessionmaker = lambda: _Recorder()
        row = await store.ensure_job("sync", 60, next_run_at=NOW)
        assert row.job_name == "sync"
        assert "ON CONFLICT" in str(executed[0].compile(dialect=postgresql.dialect())).upper()

    asyncio.run(_run())


def test_schema_status_constraint_rejects_unknown_status() -> None:
    sync_engine = create_engine("sqlite:///:memory:", future=True)
    metadata.create_all(sync_engine)
    with sync_engine.begin() as conn:
        conn.execute(
            JobSchedules.insert().values(
                job_name="sync", cadence_seconds=60, next_run_at=NOW
            )
        )
        row = conn.execute(select(JobSchedules.c.enabled, JobSchedules.c.force_run)).first()
        assert row is not None and bool(row.enabled) is True and bool(row.force_run) is False
    with pytest.raises(IntegrityError):
        with sync_engine.begin() as conn:
            conn.execute(
                JobSchedules.update().values(status="queued")
            )


def test_as_utc_attaches_timezone() -> None:
    naive = datetime(2026, 3, 1, 12, 0)
    assert _as_utc(naive) == NOW
    assert _as_utc(NOW) is NOW
    assert _as_utc(None) is None
