"""Run log sinks."""

from .memory import MemoryRunLogSink

__all__ = ["MemoryRunLogSink"]
