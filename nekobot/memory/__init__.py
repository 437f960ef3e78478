"""Markdown memory store."""

from nekobot.memory.store import (
    CORE_FILE,
    MemoryContext,
    MemoryFile,
    MemoryStore,
    ReplaceResult,
    SearchHit,
    WriteResult,
)

__all__ = [
    "CORE_FILE",
    "MemoryContext",
    "MemoryFile",
    "MemoryStore",
    "ReplaceResult",
    "SearchHit",
    "WriteResult",
]
