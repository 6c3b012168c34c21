"""
Chunk/entry store interface.

The engine never touches storage directly; it talks to a :class:`ChunkStore`
holding two logical tables: entries (whole documents) and chunks (fragments
with vectors and denormalized metadata).  Implementations are assumed to be
externally synchronised; the engine adds no locking or consistency guarantees
of its own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..models import Chunk, Entry, MetadataFilter
from ..pool import CancelToken


class ChunkStore(ABC):

    # ── Table lifecycle ──

    @abstractmethod
    def create_or_open_chunk_table(self, row: Chunk) -> None:
        """Make sure the chunk table exists, using *row* as the schema sample."""

    @abstractmethod
    def create_or_open_entry_table(self, row: Entry) -> None:
        """Make sure the entry table exists, using *row* as the schema sample."""

    # ── Writes ──

    @abstractmethod
    def insert_chunks(self, rows: list[Chunk], token: Optional[CancelToken] = None) -> None:
        ...

    @abstractmethod
    def insert_entry(self, row: Entry, token: Optional[CancelToken] = None) -> None:
        ...

    @abstractmethod
    def delete_by_parent_id(self, parent_id: str) -> int:
        """Delete every chunk owned by *parent_id*; return how many were removed."""

    @abstractmethod
    def delete_entry(self, entry_id: str) -> bool:
        """Delete the entry row; return False when it did not exist."""

    # ── Reads ──

    @abstractmethod
    def get_entry(self, entry_id: str) -> Optional[Entry]:
        ...

    @abstractmethod
    def get_chunks(self, parent_id: str) -> list[Chunk]:
        """Chunks of one entry ordered by ``chunk_index``."""

    @abstractmethod
    def list_entries(self, offset: int = 0, limit: int = 50) -> tuple[list[Entry], int]:
        """Return ``(page, total)``, newest first."""

    @abstractmethod
    def vector_search(
        self,
        query_vector: list[float],
        limit: int,
        metadata_filter: Optional[MetadataFilter] = None,
        token: Optional[CancelToken] = None,
    ) -> list[tuple[Chunk, float]]:
        """
        The *limit* chunks nearest to *query_vector* under the filter, as
        ``(chunk, distance)`` pairs sorted by ascending distance.  Returned
        chunks carry their raw vector.
        """

    @abstractmethod
    def scan(
        self,
        metadata_filter: Optional[MetadataFilter] = None,
        max_rows: int = 10000,
        token: Optional[CancelToken] = None,
    ) -> list[Chunk]:
        """Up to *max_rows* filter-matching chunks in a stable order."""

    # ── Statistics ──

    @abstractmethod
    def count_entries(self) -> int:
        ...

    @abstractmethod
    def count_chunks(self) -> int:
        ...

    @abstractmethod
    def entry_breakdown(self, field: str) -> dict[str, int]:
        """Entry counts grouped by ``chunk_strategy``, ``source`` or ``confidence``."""

    def close(self) -> None:
        """Release resources.  No-op by default."""
