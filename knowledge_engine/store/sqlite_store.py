"""
SQLite-backed chunk/entry store.

Stores entries and chunks in SQLite and computes vector distances with
numpy.  Zero-config: no Docker, no external services required.

Tables are created on first write:

    knowledge_entries   one row per ingested document
    knowledge_chunks    one row per chunk; vector as float32 BLOB,
                        tags as a JSON array
    store_meta          key/value pairs (fixed vector dimension)

Storage default: ``.knowledge_engine/knowledge.db``
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import numpy as np

from ..errors import DimensionMismatchError, StoreUnavailableError
from ..models import Chunk, Entry, MetadataFilter
from ..pool import CancelToken, check_token
from ..similarity import euclidean_distance_batch
from .base import ChunkStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_CREATE_META = """
CREATE TABLE IF NOT EXISTS store_meta (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);
"""

_CREATE_ENTRIES = """
CREATE TABLE IF NOT EXISTS knowledge_entries (
    id              TEXT PRIMARY KEY,
    title           TEXT NOT NULL DEFAULT '',
    original_text   TEXT NOT NULL,
    source          TEXT NOT NULL DEFAULT '',
    confidence      TEXT NOT NULL DEFAULT '',
    tags            TEXT NOT NULL DEFAULT '[]',
    content_type    TEXT NOT NULL DEFAULT '',
    chunk_strategy  TEXT NOT NULL DEFAULT '',
    chunk_count     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entries_created ON knowledge_entries(created_at);
"""

_CREATE_CHUNKS = """
CREATE TABLE IF NOT EXISTS knowledge_chunks (
    id              TEXT PRIMARY KEY,
    parent_id       TEXT NOT NULL,
    text            TEXT NOT NULL,
    vector          BLOB NOT NULL,
    chunk_index     INTEGER NOT NULL,
    chunk_count     INTEGER NOT NULL,
    chunk_strategy  TEXT NOT NULL DEFAULT '',
    chunk_level     TEXT DEFAULT NULL,
    heading         TEXT DEFAULT NULL,
    title           TEXT NOT NULL DEFAULT '',
    source          TEXT NOT NULL DEFAULT '',
    confidence      TEXT NOT NULL DEFAULT '',
    tags            TEXT NOT NULL DEFAULT '[]',
    content_type    TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chunks_parent ON knowledge_chunks(parent_id);
CREATE INDEX IF NOT EXISTS idx_chunks_created ON knowledge_chunks(created_at);
"""

_CHUNK_COLUMNS = (
    "id", "parent_id", "text", "vector", "chunk_index", "chunk_count",
    "chunk_strategy", "chunk_level", "heading", "title", "source",
    "confidence", "tags", "content_type", "created_at", "updated_at",
)
_ENTRY_COLUMNS = (
    "id", "title", "original_text", "source", "confidence", "tags",
    "content_type", "chunk_strategy", "chunk_count", "created_at", "updated_at",
)
_STABLE_ORDER = "ORDER BY created_at, parent_id, chunk_index"
_BREAKDOWN_FIELDS = frozenset({"chunk_strategy", "source", "confidence", "content_type"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vec_to_bytes(vec: list[float]) -> bytes:
    """Serialise a float list to compact float32 bytes."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_array(buf: bytes) -> np.ndarray:
    return np.frombuffer(buf, dtype=np.float32)


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        parent_id=row["parent_id"],
        text=row["text"],
        vector=_bytes_to_array(row["vector"]).tolist(),
        chunk_index=row["chunk_index"],
        chunk_count=row["chunk_count"],
        chunk_strategy=row["chunk_strategy"],
        chunk_level=row["chunk_level"] or None,
        heading=row["heading"],
        title=row["title"],
        source=row["source"],
        confidence=row["confidence"],
        tags=tuple(json.loads(row["tags"] or "[]")),
        content_type=row["content_type"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        title=row["title"],
        original_text=row["original_text"],
        source=row["source"],
        confidence=row["confidence"],
        tags=tuple(json.loads(row["tags"] or "[]")),
        content_type=row["content_type"],
        chunk_strategy=row["chunk_strategy"],
        chunk_count=row["chunk_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def build_where_clause(metadata_filter: Optional[MetadataFilter]) -> tuple[str, list]:
    """
    Translate a :class:`MetadataFilter` into a parameterised WHERE clause
    over ``knowledge_chunks``.

    Returns
    -------
    tuple[str, list]
        ``("WHERE ...", params)`` or ``("", [])`` when nothing is filtered.
    """
    if metadata_filter is None or metadata_filter.is_empty():
        return "", []
    clauses: list[str] = []
    params: list = []
    for column in ("source", "confidence", "content_type"):
        value = getattr(metadata_filter, column)
        if value:
            clauses.append(f"{column} = ?")
            params.append(value)
    if metadata_filter.date_from:
        clauses.append("created_at >= ?")
        params.append(metadata_filter.date_from)
    if metadata_filter.date_to:
        clauses.append("created_at <= ?")
        params.append(metadata_filter.date_to)
    if metadata_filter.tags:
        placeholders = ",".join("?" for _ in metadata_filter.tags)
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(knowledge_chunks.tags) "
            f"WHERE json_each.value IN ({placeholders}))"
        )
        params.extend(metadata_filter.tags)
    return "WHERE " + " AND ".join(clauses), params


# ---------------------------------------------------------------------------
# SQLiteChunkStore
# ---------------------------------------------------------------------------

class SQLiteChunkStore(ChunkStore):
    """Local chunk/entry store backed by SQLite + numpy L2 distance.

    Parameters
    ----------
    db_path:
        Path to the database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._dimension: Optional[int] = None
        self._tables: set[str] = set()
        with self._transaction() as conn:
            conn.executescript(_CREATE_META)
            row = conn.execute(
                "SELECT value FROM store_meta WHERE key = 'vector_dim'"
            ).fetchone()
            if row is not None:
                self._dimension = int(row["value"])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Thread-safe lazy connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the locked connection; commit on success, roll back on error."""
        with self._lock:
            try:
                conn = self._get_conn()
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                if self._conn is not None:
                    self._conn.rollback()
                raise StoreUnavailableError(f"SQLite store error: {exc}") from exc
            except Exception:
                if self._conn is not None:
                    self._conn.rollback()
                raise

    def _has_table(self, conn: sqlite3.Connection, name: str) -> bool:
        if name in self._tables:
            return True
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        if row is not None:
            self._tables.add(name)
            return True
        return False

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    logger.debug("Ignoring error while closing %s", self._db_path)
                self._conn = None

    @property
    def dimension(self) -> Optional[int]:
        """Vector dimension fixed by the first chunk write, if any."""
        return self._dimension

    # ------------------------------------------------------------------
    # Table creation
    # ------------------------------------------------------------------

    def create_or_open_chunk_table(self, row: Chunk) -> None:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_chunks"):
                conn.executescript(_CREATE_CHUNKS)
                self._tables.add("knowledge_chunks")
                logger.info("[SQLiteChunkStore] Created knowledge_chunks table")
            if self._dimension is None:
                self._dimension = len(row.vector)
                conn.execute(
                    "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('vector_dim', ?)",
                    (str(self._dimension),),
                )

    def create_or_open_entry_table(self, row: Entry) -> None:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_entries"):
                conn.executescript(_CREATE_ENTRIES)
                self._tables.add("knowledge_entries")
                logger.info("[SQLiteChunkStore] Created knowledge_entries table")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_chunks(self, rows: list[Chunk], token: Optional[CancelToken] = None) -> None:
        if not rows:
            return
        check_token(token)
        self.create_or_open_chunk_table(rows[0])
        for row in rows:
            if len(row.vector) != self._dimension:
                raise DimensionMismatchError(self._dimension, len(row.vector))

        values = [
            (
                r.id, r.parent_id, r.text, _vec_to_bytes(r.vector), r.chunk_index,
                r.chunk_count, r.chunk_strategy, r.chunk_level, r.heading, r.title,
                r.source, r.confidence, json.dumps(list(r.tags)), r.content_type,
                r.created_at, r.updated_at,
            )
            for r in rows
        ]
        placeholders = ",".join("?" for _ in _CHUNK_COLUMNS)
        with self._transaction() as conn:
            conn.executemany(
                f"INSERT INTO knowledge_chunks ({', '.join(_CHUNK_COLUMNS)}) "
                f"VALUES ({placeholders})",
                values,
            )
        logger.debug("[SQLiteChunkStore] Inserted %d chunks", len(rows))

    def insert_entry(self, row: Entry, token: Optional[CancelToken] = None) -> None:
        check_token(token)
        self.create_or_open_entry_table(row)
        placeholders = ",".join("?" for _ in _ENTRY_COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO knowledge_entries ({', '.join(_ENTRY_COLUMNS)}) "
                f"VALUES ({placeholders})",
                (
                    row.id, row.title, row.original_text, row.source, row.confidence,
                    json.dumps(list(row.tags)), row.content_type, row.chunk_strategy,
                    row.chunk_count, row.created_at, row.updated_at,
                ),
            )

    def delete_by_parent_id(self, parent_id: str) -> int:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_chunks"):
                return 0
            cur = conn.execute(
                "DELETE FROM knowledge_chunks WHERE parent_id = ?", (parent_id,)
            )
            removed = cur.rowcount
        logger.debug("[SQLiteChunkStore] Deleted %d chunks for %s", removed, parent_id)
        return removed

    def delete_entry(self, entry_id: str) -> bool:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_entries"):
                return False
            cur = conn.execute("DELETE FROM knowledge_entries WHERE id = ?", (entry_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_entries"):
                return None
            row = conn.execute(
                "SELECT * FROM knowledge_entries WHERE id = ?", (entry_id,)
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def get_chunks(self, parent_id: str) -> list[Chunk]:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_chunks"):
                return []
            rows = conn.execute(
                "SELECT * FROM knowledge_chunks WHERE parent_id = ? ORDER BY chunk_index",
                (parent_id,),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def list_entries(self, offset: int = 0, limit: int = 50) -> tuple[list[Entry], int]:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_entries"):
                return [], 0
            total = conn.execute("SELECT COUNT(*) FROM knowledge_entries").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM knowledge_entries ORDER BY created_at DESC, id "
                "LIMIT ? OFFSET ?",
                (max(0, limit), max(0, offset)),
            ).fetchall()
        return [_row_to_entry(r) for r in rows], total

    def _select_chunks(
        self,
        metadata_filter: Optional[MetadataFilter],
        max_rows: Optional[int] = None,
    ) -> list[sqlite3.Row]:
        where, params = build_where_clause(metadata_filter)
        sql = f"SELECT * FROM knowledge_chunks {where} {_STABLE_ORDER}"
        if max_rows is not None:
            sql += " LIMIT ?"
            params = params + [max(0, max_rows)]
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_chunks"):
                return []
            return conn.execute(sql, params).fetchall()

    def vector_search(
        self,
        query_vector: list[float],
        limit: int,
        metadata_filter: Optional[MetadataFilter] = None,
        token: Optional[CancelToken] = None,
    ) -> list[tuple[Chunk, float]]:
        check_token(token)
        if limit <= 0:
            return []
        if self._dimension is not None and len(query_vector) != self._dimension:
            raise DimensionMismatchError(self._dimension, len(query_vector))

        rows = self._select_chunks(metadata_filter)
        if not rows:
            return []
        check_token(token)

        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.stack([_bytes_to_array(r["vector"]) for r in rows])
        distances = euclidean_distance_batch(query, matrix)
        # Stable sort keeps storage order among equal distances.
        order = np.argsort(distances, kind="stable")[:limit]
        return [(_row_to_chunk(rows[i]), float(distances[i])) for i in order]

    def scan(
        self,
        metadata_filter: Optional[MetadataFilter] = None,
        max_rows: int = 10000,
        token: Optional[CancelToken] = None,
    ) -> list[Chunk]:
        check_token(token)
        return [_row_to_chunk(r) for r in self._select_chunks(metadata_filter, max_rows)]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def count_entries(self) -> int:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_entries"):
                return 0
            return conn.execute("SELECT COUNT(*) FROM knowledge_entries").fetchone()[0]

    def count_chunks(self) -> int:
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_chunks"):
                return 0
            return conn.execute("SELECT COUNT(*) FROM knowledge_chunks").fetchone()[0]

    def entry_breakdown(self, field: str) -> dict[str, int]:
        if field not in _BREAKDOWN_FIELDS:
            raise ValueError(f"Cannot break entries down by {field!r}")
        with self._transaction() as conn:
            if not self._has_table(conn, "knowledge_entries"):
                return {}
            rows = conn.execute(
                f"SELECT {field} AS k, COUNT(*) AS n FROM knowledge_entries "
                f"GROUP BY {field} ORDER BY {field}"
            ).fetchall()
        return {r["k"]: r["n"] for r in rows}
