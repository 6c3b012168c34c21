"""
Chunking engine: split raw text into ordered, retrievable chunks.

Five strategies are pure functions of ``(text, options)``:

    fixed      fixed character window advanced by ``chunk_size - overlap``
    sentence   groups of N sentences
    paragraph  blank-line paragraphs, short ones merged into a running buffer
    sliding    fixed window advanced by a smaller stride
    recursive  markdown sections -> paragraphs -> sentences, only as deep as
               needed to stay under ``max_chunk_size``

``semantic`` is the one effectful strategy: it embeds every sentence and
starts a new chunk where neighbouring sentences stop looking alike, so it
needs an :class:`~knowledge_engine.providers.EmbeddingProvider`.  Use
:func:`requires_provider` to find out up front.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Callable, Optional

from .errors import ProviderUnavailableError
from .similarity import cosine_similarity

if TYPE_CHECKING:
    from .pool import CancelToken
    from .providers.base import EmbeddingProvider

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Options and output records
# ---------------------------------------------------------------------------

@dataclass
class ChunkOptions:
    """Tunables for every strategy; each strategy reads only its own fields."""

    chunk_size: int = 512               # fixed
    overlap: int = 50                   # fixed
    sentences_per_chunk: int = 3        # sentence
    min_paragraph_length: int = 50      # paragraph
    paragraph_merge_factor: int = 10    # paragraph: flush above min * factor
    window_size: int = 512              # sliding
    step_size: int = 256                # sliding
    similarity_threshold: float = 0.5   # semantic
    max_chunk_size: int = 1000          # recursive

    # camelCase names accepted from JSON callers
    _ALIASES = {
        "chunkSize": "chunk_size",
        "maxChunkSentences": "sentences_per_chunk",
        "max_chunk_sentences": "sentences_per_chunk",
        "minParagraphLength": "min_paragraph_length",
        "windowSize": "window_size",
        "stepSize": "step_size",
        "stride": "step_size",
        "threshold": "similarity_threshold",
        "maxChunkSize": "max_chunk_size",
    }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ChunkOptions":
        if not data:
            return cls()
        known = {f.name: f.type for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name not in known:
                logger.warning("Ignoring unknown chunk option %r", key)
                continue
            cast = float if name == "similarity_threshold" else int
            kwargs[name] = cast(value)
        return cls(**kwargs)


@dataclass
class TextChunk:
    """One chunk produced by a strategy, before embedding."""

    text: str
    index: int
    strategy: str
    level: Optional[str] = None          # recursive: section | paragraph | sentence
    heading: Optional[str] = None        # recursive
    char_start: Optional[int] = None     # fixed, sliding
    char_end: Optional[int] = None       # fixed, sliding
    sentence_start: Optional[int] = None  # sentence
    sentence_end: Optional[int] = None    # sentence
    similarity_break: Optional[float] = None  # semantic


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Sentence end followed by whitespace and an uppercase letter, or any newline run.
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-Z])|\n+")
_PARAGRAPH_BOUNDARY = re.compile(r"\n\s*\n")
_SECTION_BOUNDARY = re.compile(r"(?=^#{1,3}\s)", re.MULTILINE)
_HEADING = re.compile(r"^(#{1,3})\s+(.*)")


def split_sentences(text: str) -> list[str]:
    """Split *text* into trimmed, non-empty sentences."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s and s.strip()]


def split_paragraphs(text: str) -> list[str]:
    return [p.strip() for p in _PARAGRAPH_BOUNDARY.split(text) if p.strip()]


def _window(text: str, size: int, step: int, strategy: str) -> list[TextChunk]:
    if size <= 0:
        raise ValueError(f"{strategy}: window size must be positive, got {size}")
    if step <= 0:
        raise ValueError(f"{strategy}: step must be positive, got {step}")
    chunks: list[TextChunk] = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        chunks.append(TextChunk(
            text=text[start:end], index=len(chunks), strategy=strategy,
            char_start=start, char_end=end,
        ))
        if end >= len(text):
            break
        start += step
    return chunks


# ---------------------------------------------------------------------------
# Pure strategies
# ---------------------------------------------------------------------------

def chunk_fixed(text: str, options: ChunkOptions) -> list[TextChunk]:
    """Fixed window of ``chunk_size`` characters, consecutive windows share ``overlap``."""
    if options.overlap < 0 or options.overlap >= options.chunk_size:
        raise ValueError(
            f"fixed: overlap must be in [0, chunk_size), got {options.overlap} "
            f"with chunk_size {options.chunk_size}"
        )
    return _window(text, options.chunk_size, options.chunk_size - options.overlap, "fixed")


def chunk_sliding(text: str, options: ChunkOptions) -> list[TextChunk]:
    """Window of ``window_size`` characters stepped by ``step_size``."""
    return _window(text, options.window_size, options.step_size, "sliding")


def chunk_sentence(text: str, options: ChunkOptions) -> list[TextChunk]:
    n = options.sentences_per_chunk
    if n <= 0:
        raise ValueError(f"sentence: sentences_per_chunk must be positive, got {n}")
    sentences = split_sentences(text)
    chunks: list[TextChunk] = []
    for i in range(0, len(sentences), n):
        group = sentences[i: i + n]
        chunks.append(TextChunk(
            text=" ".join(group), index=len(chunks), strategy="sentence",
            sentence_start=i, sentence_end=i + len(group),
        ))
    return chunks


def chunk_paragraph(text: str, options: ChunkOptions) -> list[TextChunk]:
    """
    Blank-line paragraphs.  A buffer shorter than ``min_paragraph_length``
    absorbs the next paragraph; the buffer is flushed before it would grow
    past ``min_paragraph_length * paragraph_merge_factor``.
    """
    min_len = options.min_paragraph_length
    merge_limit = min_len * options.paragraph_merge_factor
    chunks: list[TextChunk] = []
    current = ""

    def _flush() -> None:
        chunks.append(TextChunk(text=current, index=len(chunks), strategy="paragraph"))

    for para in split_paragraphs(text):
        if current and len(current) + len(para) > merge_limit:
            _flush()
            current = para
        elif len(current) < min_len:
            current = f"{current}\n\n{para}" if current else para
        else:
            if current:
                _flush()
            current = para
    if current:
        _flush()
    return chunks


def chunk_recursive(text: str, options: ChunkOptions) -> list[TextChunk]:
    """
    Split on markdown headers (``#`` to ``###``), then on paragraphs, then on
    sentences, descending only into pieces longer than ``max_chunk_size``.
    Chunk text is prefixed with ``"<heading>: "`` when a heading applies.
    """
    max_size = options.max_chunk_size
    chunks: list[TextChunk] = []

    def _emit(body: str, level: str, heading: Optional[str]) -> None:
        chunks.append(TextChunk(
            text=f"{heading}: {body}" if heading else body,
            index=len(chunks), strategy="recursive", level=level, heading=heading,
        ))

    for section in _SECTION_BOUNDARY.split(text):
        match = _HEADING.match(section)
        heading = match.group(2).strip() if match else None
        content = (section[match.end():] if match else section).strip()
        if not content:
            continue

        if len(content) <= max_size:
            _emit(content, "section", heading)
            continue

        for para in split_paragraphs(content):
            if len(para) <= max_size:
                _emit(para, "paragraph", heading)
                continue
            current = ""
            for sent in split_sentences(para):
                if current and len(current) + len(sent) > max_size:
                    _emit(current, "sentence", heading)
                    current = sent
                else:
                    current = f"{current} {sent}" if current else sent
            if current:
                _emit(current, "sentence", heading)
    return chunks


# ---------------------------------------------------------------------------
# Effectful strategy
# ---------------------------------------------------------------------------

def chunk_semantic(
    text: str,
    options: ChunkOptions,
    provider: "EmbeddingProvider",
    token: Optional["CancelToken"] = None,
) -> list[TextChunk]:
    """
    Embed every sentence and cut wherever cosine similarity between
    neighbouring sentences drops below ``similarity_threshold``.

    Single-sentence input returns one chunk without calling the provider.
    """
    sentences = split_sentences(text)
    if len(sentences) <= 1:
        return [TextChunk(text=text.strip(), index=0, strategy="semantic")]

    vectors = provider.embed_batch(sentences, token=token)

    chunks: list[TextChunk] = []
    group = [sentences[0]]
    for i in range(1, len(sentences)):
        sim = cosine_similarity(vectors[i - 1], vectors[i])
        if sim < options.similarity_threshold:
            chunks.append(TextChunk(
                text=" ".join(group), index=len(chunks), strategy="semantic",
                similarity_break=sim,
            ))
            group = [sentences[i]]
        else:
            group.append(sentences[i])
    chunks.append(TextChunk(text=" ".join(group), index=len(chunks), strategy="semantic"))
    return chunks


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

PURE_STRATEGIES: dict[str, Callable[[str, ChunkOptions], list[TextChunk]]] = {
    "fixed": chunk_fixed,
    "sentence": chunk_sentence,
    "paragraph": chunk_paragraph,
    "sliding": chunk_sliding,
    "recursive": chunk_recursive,
}
PROVIDER_STRATEGIES = frozenset({"semantic"})
STRATEGIES = tuple(PURE_STRATEGIES) + tuple(sorted(PROVIDER_STRATEGIES))
DEFAULT_STRATEGY = "paragraph"


def resolve_strategy(strategy: Optional[str]) -> str:
    """Return *strategy* if known, else the default (with a warning)."""
    if not strategy:
        return DEFAULT_STRATEGY
    if strategy in PURE_STRATEGIES or strategy in PROVIDER_STRATEGIES:
        return strategy
    logger.warning("Unknown chunk strategy %r; falling back to %r", strategy, DEFAULT_STRATEGY)
    return DEFAULT_STRATEGY


def requires_provider(strategy: str) -> bool:
    """True for strategies that call the embedding provider while chunking."""
    return resolve_strategy(strategy) in PROVIDER_STRATEGIES


def chunk(
    text: str,
    strategy: str = DEFAULT_STRATEGY,
    options: Optional[ChunkOptions | dict] = None,
    provider: Optional["EmbeddingProvider"] = None,
    token: Optional["CancelToken"] = None,
) -> list[TextChunk]:
    """
    Split *text* with *strategy*.

    Parameters
    ----------
    text:
        Raw input.  Blank input yields ``[]``.
    strategy:
        One of :data:`STRATEGIES`; unknown names fall back to ``paragraph``.
    options:
        :class:`ChunkOptions` or a dict of option names.
    provider:
        Required for ``semantic`` only.

    Returns
    -------
    list[TextChunk]
        Chunks with contiguous ``index`` values starting at 0.
    """
    if not text or not text.strip():
        return []
    if not isinstance(options, ChunkOptions):
        options = ChunkOptions.from_dict(options)
    name = resolve_strategy(strategy)

    if name in PROVIDER_STRATEGIES:
        if provider is None:
            raise ProviderUnavailableError(
                f"Chunk strategy {name!r} requires an embedding provider"
            )
        chunks = chunk_semantic(text, options, provider, token)
    else:
        chunks = PURE_STRATEGIES[name](text, options)

    logger.debug("Chunked %d chars into %d chunk(s) with %s", len(text), len(chunks), name)
    return chunks
