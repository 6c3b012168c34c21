"""
Chunk/entry persistence.

:class:`ChunkStore` is the interface the engine consumes;
:class:`SQLiteChunkStore` is the bundled zero-config implementation.
"""

from .base import ChunkStore
from .sqlite_store import SQLiteChunkStore

__all__ = ["ChunkStore", "SQLiteChunkStore", "create_store"]


def create_store(config) -> ChunkStore:
    """Create the store configured by ``config.DB_PATH``."""
    return SQLiteChunkStore(config.DB_PATH)
