"""Round-robin distribution of work across a pool of API keys.

Rotation is a load-spreading heuristic owned by one process; it is not a
correctness mechanism and keeps no state outside the rotator instance.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class ApiKeyRotator:
    """Cycle through ``keys`` for sequential or per-key concurrent processing."""

    def __init__(self, keys: Sequence[str]) -> None:
        if not keys:
            raise ValueError("ApiKeyRotator requires at least one API key")
        self.keys = list(keys)
        self._index = 0

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"ApiKeyRotator(keys={len(self.keys)}, index={self._index})"

    @property
    def key_count(self) -> int:
        return len(self.keys)

    def get_next_key(self) -> str:
        key = self.keys[self._index]
        self._index = (self._index + 1) % len(self.keys)
        return key

    async def process_sequential(
        self,
        items: Sequence[T],
        handler: Callable[[T, str], Awaitable[R]],
        delay_s: float = 0.7,
    ) -> list[R]:
        """Run ``handler`` for each item in order, rotating keys.

        Sleeps ``delay_s`` between items (not before the first). A handler
        exception aborts the sequence.
        """

        results: list[R] = []
        for position, item in enumerate(items):
            if position and delay_s > 0:
                await asyncio.sleep(delay_s)
            results.append(await handler(item, self.get_next_key()))
        return results

    async def process_concurrent(
        self,
        items: Sequence[T],
        handler: Callable[[T, str], Awaitable[R]],
        delay_s: float = 0.0,
    ) -> list[R]:
        """Run one sequential lane per key, with the lanes in parallel.

        Items are dealt to keys round-robin by position. Concurrency is bounded
        by the number of keys, and each key still paces its own requests with
        ``delay_s`` between items in its lane. Results follow input order. A
        handler error cancels the remaining lanes and is re-raised.
        """

        lanes: list[list[int]] = [[] for _ in self.keys]
        for position in range(len(items)):
            lanes[position % len(self.keys)].append(position)
        results: list[R | None] = [None] * len(items)

        async def _lane(key: str, positions: list[int]) -> None:
            for step, position in enumerate(positions):
                if step and delay_s > 0:
                    await asyncio.sleep(delay_s)
                results[position] = await handler(items[position], key)

        try:
            async with asyncio.TaskGroup() as group:
                for key, positions in zip(self.keys, lanes):
                    if positions:
                        group.create_task(_lane(key, positions))
        except ExceptionGroup as failed:
            # The first failing lane cancels the others; surface its error.
            raise failed.exceptions[0]
        return results  # type: ignore[return-value]


class ScopedKeyRotator:
    """Independent round-robin cursors per scope, e.g. per Discord guild.

    The key list is supplied on every call because scopes manage their own
    pools; the cursor wraps against whatever length is passed.
    """

    def __init__(self) -> None:
        self._cursors: dict[str, int] = {}

    def next_key(self, scope: str, keys: Sequence[str]) -> str:
        if not keys:
            raise ValueError(f"no API keys configured for scope {scope!r}")
        if len(keys) == 1:
            return keys[0]
        index = self._cursors.get(scope, 0) % len(keys)
        self._cursors[scope] = index + 1
        return keys[index]

    def reset(self, scope: str | None = None) -> None:
        if scope is None:
            self._cursors.clear()
        else:
            self._cursors.pop(scope, None)
