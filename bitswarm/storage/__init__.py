"""Storage sinks for verified pieces."""

from __future__ import annotations

from bitswarm.storage.sink import FileSink, MemorySink, StorageSink

__all__ = ["FileSink", "MemorySink", "StorageSink"]
