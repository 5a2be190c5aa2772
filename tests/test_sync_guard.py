"""Tests for the in-process overlap guard."""

from __future__ import annotations

import asyncio

import pytest

from sentinelkit.sync_guard import SyncGuard


class _Monotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


def test_execute_runs_handler_and_unlocks() -> None:
    async def _run() -> None:
        guard = SyncGuard()
        calls: list[int] = []

        async def handler() -> None:
            calls.append(1)
            assert guard.is_running("job")

        assert await guard.execute("job", timeout=10, handler=handler) is True
        assert await guard.execute("job", timeout=10, handler=handler) is True
        assert calls == [1, 1]
        assert guard.is_running("job") is False

    asyncio.run(_run())


def test_overlapping_call_is_skipped() -> None:
    async def _run() -> None:
        guard = SyncGuard()
        release = asyncio.Event()
        calls: list[str] = []

        async def slow() -> None:
            calls.append("slow")
            await release.wait()

        async def fast() -> None:
            calls.append("fast")

        first = asyncio.create_task(guard.execute("job", timeout=60, handler=slow))
        await asyncio.sleep(0)
        assert await guard.execute("job", timeout=60, handler=fast) is False
        assert await guard.execute("other", timeout=60, handler=fast) is True
        release.set()
        assert await first is True
        assert calls == ["slow", "fast"]

    asyncio.run(_run())


def test_stuck_run_is_force_unlocked_after_timeout(caplog) -> None:
    async def _run() -> None:
        clock = _Monotonic()
        guard = SyncGuard(monotonic=clock)
        release = asyncio.Event()

        async def stuck() -> None:
            await release.wait()

        async def fresh() -> None:
            return None

        first = asyncio.create_task(guard.execute("job", timeout=30, handler=stuck))
        await asyncio.sleep(0)
        clock.value += 29
        assert await guard.execute("job", timeout=30, handler=fresh) is False
        clock.value += 1
        second_entered = asyncio.Event()
        release_second = asyncio.Event()

        async def replacement() -> None:
            second_entered.set()
            await release_second.wait()

        second = asyncio.create_task(guard.execute("job", timeout=30, handler=replacement))
        await second_entered.wait()
        release.set()
        assert await first is True
        # The stale run finishing must not release the replacement's lock early.
        assert guard.is_running("job") is True
        release_second.set()
        assert await second is True
        assert guard.is_running("job") is False

    asyncio.run(_run())
    assert "force unlocking" in caplog.text


def test_handler_errors_unlock_and_propagate() -> None:
    async def _run() -> None:
        guard = SyncGuard()

        async def broken() -> None:
            raise RuntimeError("handler failed")

        with pytest.raises(RuntimeError, match="handler failed"):
            await guard.execute("job", timeout=10, handler=broken)
        assert guard.is_running("job") is False

    asyncio.run(_run())


def test_wrap_returns_scheduler_handler() -> None:
    async def _run() -> None:
        guard = SyncGuard()
        calls: list[int] = []

        async def handler() -> None:
            calls.append(1)

        wrapped = guard.wrap("job", timeout=5, handler=handler)
        assert await wrapped() is True
        assert calls == [1]

    asyncio.run(_run())
