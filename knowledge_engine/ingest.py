"""
Ingestion pipeline: text in, one entry plus N embedded chunks out.

    chunk -> embed_batch (bounded worker pool) -> insert chunks -> insert entry

Embedding happens before any store write, so a provider failure leaves the
store untouched.  If the entry write fails after the chunk write succeeded,
the chunks written for that parent id are removed again before the error is
re-raised.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Iterable, Optional

from .chunking import ChunkOptions, DEFAULT_STRATEGY, chunk, resolve_strategy
from .errors import (
    ChunkingProducedNothingError,
    EmptyInputError,
    KnowledgeBaseError,
    OperationCancelledError,
)
from .models import Chunk, Entry, EntryReceipt, _as_tags, normalize_timestamp, utc_now_iso
from .pool import CancelToken, check_token

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "user"
DEFAULT_CONFIDENCE = "medium"
TITLE_LENGTH = 80
FACT_MAX_LENGTH = 500


def infer_content_type(text: str) -> str:
    """``fact`` for short snippets, ``document`` for anything longer."""
    return "fact" if len(text) < FACT_MAX_LENGTH else "document"


def default_title(text: str) -> str:
    return text.strip()[:TITLE_LENGTH]


class Ingestor:
    """
    Chunks, embeds and persists documents.

    Parameters
    ----------
    store:
        Destination :class:`~knowledge_engine.store.ChunkStore`.
    provider:
        :class:`~knowledge_engine.providers.EmbeddingProvider` used for the
        chunk vectors and for the ``semantic`` strategy.
    default_strategy:
        Strategy used when a call does not name one.
    """

    def __init__(self, store, provider, default_strategy: str = DEFAULT_STRATEGY) -> None:
        self._store = store
        self._provider = provider
        self._default_strategy = resolve_strategy(default_strategy)

    def ingest(
        self,
        text: str,
        title: Optional[str] = None,
        source: str = DEFAULT_SOURCE,
        confidence: str = DEFAULT_CONFIDENCE,
        tags: Optional[Iterable[str]] = None,
        content_type: Optional[str] = None,
        strategy: Optional[str] = None,
        strategy_options: Optional[ChunkOptions | dict] = None,
        created_at: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> EntryReceipt:
        """
        Ingest one document.

        Raises
        ------
        EmptyInputError
            If *text* is blank.
        ValueError
            If *created_at* is not an ISO-8601 timestamp.
        ChunkingProducedNothingError
            If the strategy produced no chunks.
        ProviderUnavailableError, DimensionMismatchError
            If embedding failed; nothing was written.
        StoreUnavailableError
            If persisting failed; nothing is left behind.
        """
        if not text or not text.strip():
            raise EmptyInputError("Text to ingest is empty")
        created_at = normalize_timestamp(created_at)
        check_token(token)

        t0 = time.perf_counter()
        strategy = resolve_strategy(strategy or self._default_strategy)
        pieces = chunk(text, strategy, strategy_options, provider=self._provider, token=token)
        if not pieces:
            raise ChunkingProducedNothingError(
                f"Strategy {strategy!r} produced no chunks for {len(text)} chars"
            )

        vectors = self._provider.embed_batch([p.text for p in pieces], token=token)

        entry_id = str(uuid.uuid4())
        timestamp = created_at or utc_now_iso()
        title = title or default_title(text)
        source = source or DEFAULT_SOURCE
        confidence = confidence or DEFAULT_CONFIDENCE
        content_type = content_type or infer_content_type(text)
        tag_tuple = _as_tags(tags)
        n = len(pieces)

        chunks = [
            Chunk(
                id=str(uuid.uuid4()),
                parent_id=entry_id,
                text=piece.text,
                vector=vector,
                chunk_index=i,
                chunk_count=n,
                chunk_strategy=strategy,
                title=title,
                source=source,
                confidence=confidence,
                tags=tag_tuple,
                content_type=content_type,
                created_at=timestamp,
                updated_at=timestamp,
                chunk_level=piece.level,
                heading=piece.heading,
            )
            for i, (piece, vector) in enumerate(zip(pieces, vectors))
        ]
        entry = Entry(
            id=entry_id,
            title=title,
            original_text=text,
            source=source,
            confidence=confidence,
            tags=tag_tuple,
            content_type=content_type,
            chunk_strategy=strategy,
            chunk_count=n,
            created_at=timestamp,
            updated_at=timestamp,
        )

        check_token(token)
        self._store.insert_chunks(chunks, token=token)
        try:
            self._store.insert_entry(entry, token=token)
        except Exception:
            logger.warning("Entry write failed for %s; removing its %d chunks", entry_id, n)
            try:
                self._store.delete_by_parent_id(entry_id)
            except Exception as cleanup_exc:
                logger.error("Could not remove chunks of %s: %s", entry_id, cleanup_exc)
            raise

        elapsed = (time.perf_counter() - t0) * 1000
        logger.info("Ingested %s: %d chunk(s) via %s in %.1fms", entry_id, n, strategy, elapsed)
        return EntryReceipt(
            id=entry_id,
            title=title,
            chunk_count=n,
            chunk_strategy=strategy,
            source=source,
            confidence=confidence,
            tags=tag_tuple,
            created_at=timestamp,
        )

    def ingest_many(
        self,
        documents: Iterable[dict],
        defaults: Optional[dict] = None,
        token: Optional[CancelToken] = None,
        on_progress=None,
    ) -> tuple[list[EntryReceipt], list[tuple[int, KnowledgeBaseError]]]:
        """
        Ingest a sequence of ``{text, title, source, ...}`` dicts.

        *defaults* fills in any field a document leaves unset.  Documents
        without text are skipped.  A typed failure on one document is recorded
        and the rest still run.

        Returns
        -------
        tuple
            ``(receipts, failures)`` where *failures* holds
            ``(document_index, error)`` pairs.
        """
        defaults = defaults or {}
        receipts: list[EntryReceipt] = []
        failures: list[tuple[int, KnowledgeBaseError]] = []
        for i, doc in enumerate(documents):
            merged = {**defaults, **{k: v for k, v in doc.items() if v is not None}}
            text = merged.get("text")
            if not text or not str(text).strip():
                logger.debug("Skipping document %d: no text", i)
            else:
                try:
                    receipts.append(self.ingest(
                        str(text),
                        title=merged.get("title"),
                        source=merged.get("source", DEFAULT_SOURCE),
                        confidence=merged.get("confidence", DEFAULT_CONFIDENCE),
                        tags=merged.get("tags"),
                        content_type=merged.get("content_type"),
                        strategy=merged.get("strategy") or merged.get("chunk_strategy"),
                        strategy_options=merged.get("strategy_options"),
                        created_at=merged.get("created_at"),
                        token=token,
                    ))
                except OperationCancelledError:
                    raise
                except KnowledgeBaseError as exc:
                    logger.warning("Document %d failed to ingest: %s", i, exc)
                    failures.append((i, exc))
            if on_progress is not None:
                on_progress(i)
        return receipts, failures
