"""In-process run log sink useful for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Deque, Dict, List

from ..contracts import RunLogRecord, RunLogSink


class MemoryRunLogSink(RunLogSink):
    """Keep the most recent ``max_items`` run records per job."""

    def __init__(self, *, max_items: int = 1000) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be greater than 0")
        self._max_items = max_items
        self._logs: Dict[str, Deque[RunLogRecord]] = defaultdict(
            lambda: deque(maxlen=self._max_items)
        )
        self._lock = asyncio.Lock()

    async def write(self, record: RunLogRecord) -> None:
        async with self._lock:
            self._logs[record.job_name].append(record)

    async def get(self, job_name: str) -> List[RunLogRecord]:
        async with self._lock:
            return list(self._logs.get(job_name, ()))
