"""End-to-end check: schedule an API-backed job on SQLite and operate it via the CLI."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine

from sentinelkit import cli
from sentinelkit.backends.sql import SQLStore
from sentinelkit.backends.sql.schema import metadata
from sentinelkit.client import TornApiClient
from sentinelkit.ratelimit import RateLimiter
from sentinelkit.scheduler import JobDefinition, JobScheduler, TickOutcome

UTC = timezone.utc
API_KEY = "E2eKeyAbcdef1234"


def _torn_api(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"name": "Sentinel Faction", "members": {"1": {}, "2": {}}})


async def _tick_once(dsn: str, fetched: list[int]) -> TickOutcome:
    engine = create_async_engine(dsn)
    try:
        store = SQLStore(engine)
        limiter = RateLimiter(store, hash_pepper="e2e-pepper")
        async with TornApiClient(
            rate_limiter=limiter,
            client=httpx.AsyncClient(transport=httpx.MockTransport(_torn_api)),
        ) as client:

            async def _sync() -> None:
                result = await client.get("/faction/basic", api_key=API_KEY)
                fetched.append(len(result.unwrap()["members"]))

            job = JobDefinition(name="faction_sync", cadence_seconds=3600, handler=_sync)
            scheduler = JobScheduler(store, [job], log_sink=store)
            await scheduler.register()
            outcome = await scheduler.tick(job)
        await limiter.aclose()
        return outcome
    finally:
        await engine.dispose()


async def _inspect(dsn: str):
    engine = create_async_engine(dsn)
    try:
        store = SQLStore(engine)
        limiter = RateLimiter(store, hash_pepper="e2e-pepper")
        runs = await store.recent_runs("faction_sync")
        count = await limiter.get_request_count(API_KEY)
        await store.add_request("old-hash", datetime.now(UTC) - timedelta(hours=3))
        return runs, count
    finally:
        await engine.dispose()


@pytest.mark.e2e
def test_schedule_trigger_and_status(tmp_path, monkeypatch, capsys) -> None:
    database = tmp_path / "sentinel.db"
    metadata.create_all(create_engine(f"sqlite:///{database}"))
    dsn = f"sqlite+aiosqlite:///{database}"
    monkeypatch.setattr(cli.logging, "basicConfig", lambda **_: None)
    monkeypatch.setenv("SENTINEL_DATABASE_URL", dsn)
    fetched: list[int] = []

    assert asyncio.run(_tick_once(dsn, fetched)) is TickOutcome.SUCCEEDED
    assert asyncio.run(_tick_once(dsn, fetched)) is TickOutcome.NOT_DUE

    cli.main(["trigger", "faction_sync"])
    assert "Triggered faction_sync" in capsys.readouterr().out
    assert asyncio.run(_tick_once(dsn, fetched)) is TickOutcome.SUCCEEDED
    assert fetched == [2, 2]

    cli.main(["status", "faction_sync"])
    line = capsys.readouterr().out.strip()
    assert line.startswith("faction_sync  enabled=yes  status=idle  attempts=0")
    assert "(triggered)" not in line

    runs, count = asyncio.run(_inspect(dsn))
    assert [run.status for run in runs] == ["success", "success"]
    assert count == 2

    cli.main(["prune"])
    assert "Removed 1 rate-limit records" in capsys.readouterr().out

    cli.main(["disable", "faction_sync"])
    assert asyncio.run(_tick_once(dsn, fetched)) is TickOutcome.NOT_DUE
    assert fetched == [2, 2]
