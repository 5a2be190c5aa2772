"""Backend implementations."""

from .memory import MemoryRateLimitStore, MemoryScheduleStore
from .sql.backend import SQLStore

__all__ = ["MemoryRateLimitStore", "MemoryScheduleStore", "SQLStore"]
