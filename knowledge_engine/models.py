"""
Record types shared by the store, the ingestion pipeline and the retriever.

Entries and chunks are concrete dataclasses with explicit optional fields
rather than open dictionaries: a chunk always carries the denormalized
metadata of its parent so that filtering never needs a join.
"""

from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional, Union


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_tags(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(t) for t in value)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

@dataclass
class Entry:
    """A whole ingested document."""

    id: str
    title: str
    original_text: str
    source: str
    confidence: str
    tags: tuple[str, ...]
    content_type: str
    chunk_strategy: str
    chunk_count: int
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tags"] = list(self.tags)
        return data


@dataclass
class Chunk:
    """One retrievable fragment of an :class:`Entry`."""

    id: str
    parent_id: str
    text: str
    vector: list[float]
    chunk_index: int
    chunk_count: int
    chunk_strategy: str
    title: str
    source: str
    confidence: str
    tags: tuple[str, ...]
    content_type: str
    created_at: str
    updated_at: str
    chunk_level: Optional[str] = None   # "section" | "paragraph" | "sentence"
    heading: Optional[str] = None

    def to_dict(self, include_vector: bool = False) -> dict:
        data = asdict(self)
        data["tags"] = list(self.tags)
        if not include_vector:
            data.pop("vector", None)
        return data


@dataclass
class EntryReceipt:
    """What :meth:`Ingestor.ingest` hands back to the caller."""

    id: str
    title: str
    chunk_count: int
    chunk_strategy: str
    source: str
    confidence: str
    tags: tuple[str, ...]
    created_at: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tags"] = list(self.tags)
        return data


# ---------------------------------------------------------------------------
# Query results
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """A chunk projected with a relevance score in [0, 1]."""

    chunk_id: str
    parent_id: str
    text: str
    score: float
    method: str
    title: str
    source: str
    confidence: str
    tags: tuple[str, ...]
    content_type: str
    chunk_index: int
    chunk_count: int
    chunk_strategy: str
    created_at: str
    chunk_level: Optional[str] = None
    vector_score: Optional[float] = None
    keyword_score: Optional[float] = None
    selection_rank: Optional[int] = None

    @classmethod
    def from_chunk(cls, chunk: Chunk, score: float, method: str) -> "QueryResult":
        return cls(
            chunk_id=chunk.id,
            parent_id=chunk.parent_id,
            text=chunk.text,
            score=float(score),
            method=method,
            title=chunk.title,
            source=chunk.source,
            confidence=chunk.confidence,
            tags=tuple(chunk.tags),
            content_type=chunk.content_type,
            chunk_index=chunk.chunk_index,
            chunk_count=chunk.chunk_count,
            chunk_strategy=chunk.chunk_strategy,
            created_at=chunk.created_at,
            chunk_level=chunk.chunk_level,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tags"] = list(self.tags)
        return data


# ---------------------------------------------------------------------------
# Metadata filter
# ---------------------------------------------------------------------------

DateBound = Union[str, datetime.date, datetime.datetime, None]


def _bound_to_iso(value: DateBound, end_of_day: bool = False) -> Optional[str]:
    """Normalise a date bound to the ISO string format used for ``created_at``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        return value.isoformat(timespec="milliseconds") + "Z"
    if isinstance(value, datetime.date):
        t = datetime.time(23, 59, 59, 999000) if end_of_day else datetime.time(0, 0)
        return _bound_to_iso(datetime.datetime.combine(value, t))
    value = str(value).strip()
    if len(value) == 10:
        # Bare YYYY-MM-DD covers the whole day.
        try:
            return _bound_to_iso(datetime.date.fromisoformat(value), end_of_day)
        except ValueError:
            pass
    try:
        parsed = datetime.datetime.fromisoformat(
            value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
        )
    except ValueError:
        raise ValueError(f"Not an ISO-8601 date or timestamp: {value!r}") from None
    return _bound_to_iso(parsed)


def normalize_timestamp(value: DateBound) -> Optional[str]:
    """
    Return *value* in the stored ``YYYY-MM-DDTHH:MM:SS.mmmZ`` form.

    Naive values are taken as UTC.  Raises ``ValueError`` for anything that
    is not an ISO-8601 date or timestamp.
    """
    return _bound_to_iso(value)


@dataclass(frozen=True)
class MetadataFilter:
    """
    Predicate over non-vector chunk fields.

    All set fields must match (AND); ``tags`` matches when the chunk carries
    *any* of the listed tags (OR).  The date range is inclusive on both ends
    and compares ISO-8601 strings.
    """

    source: Optional[str] = None
    confidence: Optional[str] = None
    content_type: Optional[str] = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    date_from: Optional[str] = None
    date_to: Optional[str] = None

    @classmethod
    def build(
        cls,
        source: Optional[str] = None,
        confidence: Optional[str] = None,
        content_type: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        date_from: DateBound = None,
        date_to: DateBound = None,
    ) -> "MetadataFilter":
        return cls(
            source=source or None,
            confidence=confidence or None,
            content_type=content_type or None,
            tags=_as_tags(tags),
            date_from=_bound_to_iso(date_from),
            date_to=_bound_to_iso(date_to, end_of_day=True),
        )

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["MetadataFilter"]:
        """Build a filter from the wire shape ``{source, tags, date_range: {from, to}}``."""
        if not data:
            return None
        date_range = data.get("date_range") or {}
        return cls.build(
            source=data.get("source"),
            confidence=data.get("confidence"),
            content_type=data.get("content_type"),
            tags=data.get("tags"),
            date_from=date_range.get("from", data.get("date_from")),
            date_to=date_range.get("to", data.get("date_to")),
        )

    def is_empty(self) -> bool:
        return not (
            self.source or self.confidence or self.content_type
            or self.tags or self.date_from or self.date_to
        )

    def matches(self, record: Union[Chunk, QueryResult, Entry]) -> bool:
        if self.source and record.source != self.source:
            return False
        if self.confidence and record.confidence != self.confidence:
            return False
        if self.content_type and record.content_type != self.content_type:
            return False
        if self.date_from and record.created_at < self.date_from:
            return False
        if self.date_to and record.created_at > self.date_to:
            return False
        if self.tags and not any(t in record.tags for t in self.tags):
            return False
        return True
