"""
Knowledge engine facade.

Bundles a :class:`~knowledge_engine.store.ChunkStore`, an
:class:`~knowledge_engine.providers.EmbeddingProvider`, the ingestion
pipeline and the retriever behind the surface an HTTP layer or the CLI
consumes: ingest, search, delete, show, list and stats.

The engine adds no locking of its own.  Readers may observe a partially
ingested entry (chunks present, entry row not yet written) when a search
runs concurrently with an ingestion, to the extent the store allows it.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .chunking import ChunkOptions
from .config import Config
from .errors import EntryNotFoundError
from .ingest import Ingestor
from .models import Entry, EntryReceipt, MetadataFilter
from .pool import CancelToken
from .providers import create_provider
from .retrieval import Retriever, SearchOptions, SearchResults
from .store import create_store

logger = logging.getLogger(__name__)

BREAKDOWN_FIELDS = ("chunk_strategy", "source", "confidence")


class KnowledgeEngine:
    """
    Public operations of the knowledge base.

    Parameters
    ----------
    store:
        Chunk/entry store.
    provider:
        Embedding provider.
    config:
        Optional :class:`Config`; defaults are used when omitted.
    """

    def __init__(self, store, provider, config: Optional[Config] = None) -> None:
        self.config = config or Config()
        self.store = store
        self.provider = provider
        self._ingestor = Ingestor(store, provider, self.config.DEFAULT_CHUNK_STRATEGY)
        self._retriever = Retriever(store, provider, max_scan=self.config.KEYWORD_MAX_SCAN)

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "KnowledgeEngine":
        """Build the store and provider named by *config*."""
        config = config or Config.load()
        return cls(create_store(config), create_provider(config), config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "KnowledgeEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(
        self,
        text: str,
        title: Optional[str] = None,
        source: str = "user",
        confidence: str = "medium",
        tags: Optional[Iterable[str]] = None,
        content_type: Optional[str] = None,
        strategy: Optional[str] = None,
        strategy_options: Optional[ChunkOptions | dict] = None,
        created_at: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> EntryReceipt:
        return self._ingestor.ingest(
            text,
            title=title,
            source=source,
            confidence=confidence,
            tags=tags,
            content_type=content_type,
            strategy=strategy,
            strategy_options=strategy_options,
            created_at=created_at,
            token=token,
        )

    def ingest_many(self, documents, defaults: Optional[dict] = None,
                    token: Optional[CancelToken] = None, on_progress=None):
        return self._ingestor.ingest_many(documents, defaults, token=token,
                                          on_progress=on_progress)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        method: Optional[str] = None,
        limit: Optional[int] = None,
        metadata_filter: Optional[MetadataFilter | dict] = None,
        options: Optional[SearchOptions | dict] = None,
        token: Optional[CancelToken] = None,
    ) -> SearchResults:
        """Search with *method* (config default when omitted)."""
        return self._retriever.search(
            query,
            method=method or self.config.DEFAULT_SEARCH_METHOD,
            limit=self.config.DEFAULT_LIMIT if limit is None else limit,
            metadata_filter=metadata_filter,
            options=options,
            token=token,
        )

    # ------------------------------------------------------------------
    # Entry management
    # ------------------------------------------------------------------

    def delete_entry(self, entry_id: str) -> int:
        """
        Delete an entry and its chunks.

        Returns
        -------
        int
            Number of chunks removed.

        Raises
        ------
        EntryNotFoundError
            If no entry has *entry_id*.
        """
        if self.store.get_entry(entry_id) is None:
            raise EntryNotFoundError(entry_id)
        removed = self.store.delete_by_parent_id(entry_id)
        self.store.delete_entry(entry_id)
        logger.info("Deleted entry %s (%d chunks)", entry_id, removed)
        return removed

    def get_entry_with_chunks(self, entry_id: str) -> dict:
        """The entry as a dict plus its chunks in index order, vectors omitted."""
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        data = entry.to_dict()
        data["chunks"] = [c.to_dict() for c in self.store.get_chunks(entry_id)]
        return data

    def list_entries(self, offset: int = 0, limit: int = 50) -> tuple[list[Entry], int]:
        """One page of entries, newest first, plus the total entry count."""
        return self.store.list_entries(offset, limit)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        entry_count = self.store.count_entries()
        chunk_count = self.store.count_chunks()
        try:
            online = bool(self.provider.is_available())
        except Exception as exc:  # availability probe must never fail stats
            logger.debug("Provider availability check failed: %s", exc)
            online = False
        return {
            "entry_count": entry_count,
            "chunk_count": chunk_count,
            "avg_chunks_per_entry": (
                round(chunk_count / entry_count, 2) if entry_count else 0.0
            ),
            "by_strategy": self.store.entry_breakdown("chunk_strategy"),
            "by_source": self.store.entry_breakdown("source"),
            "by_confidence": self.store.entry_breakdown("confidence"),
            "embedding_model": self.provider.model,
            "vector_dimensions": self.provider.dimension,
            "provider_status": "online" if online else "offline",
        }
