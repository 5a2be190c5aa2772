"""In-process overlap prevention for named jobs.

The scheduler's database claim already makes a due cycle exclusive across
processes. This guard covers the remaining case inside one process: the same
handler entered twice, e.g. a run-on-start invocation still going when the
first poll tick fires.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from itertools import count
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _SyncState:
    is_running: bool = False
    start_time: float | None = None
    token: int | None = None


class SyncGuard:
    """Mutex-by-name with a timeout-based force unlock."""

    def __init__(self, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._states: dict[str, _SyncState] = {}
        self._monotonic = monotonic
        self._tokens = count(1)

    def is_running(self, name: str) -> bool:
        state = self._states.get(name)
        return bool(state and state.is_running)

    async def execute(
        self,
        name: str,
        *,
        timeout: float,
        handler: Callable[[], Awaitable[object]],
    ) -> bool:
        """Run ``handler`` unless a run under ``name`` is already in progress.

        Returns ``False`` without calling the handler when a previous run is
        younger than ``timeout`` seconds; a run older than that is assumed dead
        and force-unlocked. Returns ``True`` after the handler finishes;
        handler exceptions are re-raised after unlocking.
        """

        state = self._states.setdefault(name, _SyncState())
        if state.is_running:
            elapsed = self._monotonic() - (state.start_time or 0.0)
            if elapsed < timeout:
                logger.debug("%s already running for %.2fs; skipping", name, elapsed)
                return False
            logger.warning(
                "%s exceeded timeout (%.2fs >= %.2fs); force unlocking", name, elapsed, timeout
            )

        token = next(self._tokens)
        started = self._monotonic()
        state.is_running = True
        state.start_time = started
        state.token = token
        try:
            await handler()
            logger.info("%s completed in %dms", name, int((self._monotonic() - started) * 1000))
            return True
        finally:
            # A force-unlocked run must not release the lock of its successor.
            if state.token == token:
                state.is_running = False
                state.start_time = None
                state.token = None

    def wrap(
        self, name: str, *, timeout: float, handler: Callable[[], Awaitable[object]]
    ) -> Callable[[], Awaitable[bool]]:
        """Return a scheduler handler that runs ``handler`` through the guard."""

        async def _guarded() -> bool:
            return await self.execute(name, timeout=timeout, handler=handler)

        return _guarded
