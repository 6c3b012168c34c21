"""
Retrieval engine: five ranking methods over chunks held in a
:class:`~knowledge_engine.store.ChunkStore`.

    vector       nearest neighbours, distance d scored as 1 / (1 + d)
    keyword      BM25 over an in-memory scan of filter-matching chunks
    hybrid       weighted sum of vector and keyword scores
    mmr          Maximal Marginal Relevance re-ranking of a vector pool
    multi_query  query variations fused with Reciprocal Rank Fusion

Every method returns at most ``limit`` results, scores in [0, 1], sorted by
score descending.  An empty candidate pool gives an empty result, never an
error.  Hybrid and multi-query run their sub-searches concurrently and fail
as a whole if any branch fails.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

import numpy as np

from .errors import (
    EmptyInputError,
    ErrorKind,
    OperationCancelledError,
    SearchExecutionError,
)
from .models import Chunk, MetadataFilter, QueryResult
from .pool import CancelToken, check_token
from .similarity import distance_to_score

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

METHODS = ("vector", "keyword", "hybrid", "mmr", "multi_query")
DEFAULT_METHOD = "hybrid"

BM25_K1 = 1.5
BM25_B = 0.75
DEFAULT_MAX_SCAN = 10000

HYBRID_CANDIDATE_FACTOR = 3
MULTI_QUERY_CANDIDATE_FACTOR = 2
RRF_K = 60
MAX_QUERY_VARIATIONS = 4

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "shall", "can", "to", "of", "in", "for", "on",
    "with", "at", "by", "from", "up", "about", "into", "through", "during",
    "before", "after", "above", "below", "between", "and", "but", "or", "nor",
    "not", "so", "yet", "both", "either", "neither", "each", "every", "all",
    "any", "few", "more", "most", "other", "some", "such", "no", "only", "own",
    "same", "than", "too", "very", "just", "because", "as", "until", "while",
    "what", "which", "who", "whom", "this", "that", "these", "those", "i", "me",
    "my", "we", "our", "you", "your", "he", "him", "his", "she", "her", "it",
    "its", "they", "them", "their",
})


# ---------------------------------------------------------------------------
# Options and result container
# ---------------------------------------------------------------------------

@dataclass
class SearchOptions:
    """Per-call tunables; only the fields of the chosen method are read."""

    vector_weight: float = 0.7      # hybrid
    keyword_weight: float = 0.3     # hybrid
    mmr_lambda: float = 0.5         # mmr
    candidates: int = 30            # mmr pool size
    sub_method: str = "vector"      # multi_query: "vector" | "hybrid"
    max_scan: Optional[int] = None  # keyword: overrides the retriever default

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SearchOptions":
        data = data or {}
        opts = cls()
        if data.get("vector_weight") is not None:
            opts.vector_weight = float(data["vector_weight"])
        if data.get("keyword_weight") is not None:
            opts.keyword_weight = float(data["keyword_weight"])
        for key in ("lambda", "lambda_", "mmr_lambda"):
            if data.get(key) is not None:
                opts.mmr_lambda = float(data[key])
        if data.get("candidates") is not None:
            opts.candidates = int(data["candidates"])
        if data.get("sub_method"):
            opts.sub_method = str(data["sub_method"])
        if data.get("max_scan") is not None:
            opts.max_scan = int(data["max_scan"])
        opts.validate()
        return opts

    def validate(self) -> None:
        if self.vector_weight < 0 or self.keyword_weight < 0:
            raise ValueError("Hybrid weights must be non-negative")
        if not 0.0 <= self.mmr_lambda <= 1.0:
            raise ValueError(f"MMR lambda must be within [0, 1], got {self.mmr_lambda}")
        if self.candidates <= 0:
            raise ValueError(f"MMR candidate pool must be positive, got {self.candidates}")
        if self.sub_method not in ("vector", "hybrid"):
            raise ValueError(
                f"multi_query sub_method must be 'vector' or 'hybrid', got {self.sub_method!r}"
            )
        if self.max_scan is not None and self.max_scan <= 0:
            raise ValueError(f"max_scan must be positive, got {self.max_scan}")


class SearchResults(list):
    """
    Ordered :class:`QueryResult` list plus search metadata.

    Attributes
    ----------
    method:
        The method actually executed (after any fallback).
    query:
        The query text.
    warnings:
        ``(ErrorKind, message)`` pairs for non-fatal conditions such as an
        unknown method or a truncated keyword scan.
    """

    def __init__(
        self,
        items: Iterable[QueryResult] = (),
        method: str = "",
        query: str = "",
        warnings: Optional[list[tuple[ErrorKind, str]]] = None,
    ) -> None:
        super().__init__(items)
        self.method = method
        self.query = query
        self.warnings: list[tuple[ErrorKind, str]] = list(warnings or [])

    def add_warning(self, kind: ErrorKind, message: str) -> None:
        if (kind, message) not in self.warnings:
            self.warnings.append((kind, message))

    @property
    def truncated(self) -> bool:
        """True when a keyword scan hit its row cap."""
        return any(kind is ErrorKind.SCAN_LIMIT_EXCEEDED for kind, _ in self.warnings)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "method": self.method,
            "total_results": len(self),
            "results": [r.to_dict() for r in self],
            "warnings": [{"kind": k.value, "message": m} for k, m in self.warnings],
        }


# ---------------------------------------------------------------------------
# Pure scoring helpers
# ---------------------------------------------------------------------------

def tokenize_query(text: str) -> list[str]:
    """Lowercase whitespace tokens longer than one character."""
    return [t for t in text.lower().split() if len(t) > 1]


def bm25_scores(
    query_terms: Sequence[str],
    documents: Sequence[str],
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> list[float]:
    """
    BM25 score of every document for *query_terms*.

    Term and document frequency use substring containment on the lowercased
    text, so ``"cat"`` also counts inside ``"category"``.  Term frequency is
    the number of non-overlapping occurrences; document length is measured
    in characters.
    """
    n = len(documents)
    if n == 0 or not query_terms:
        return [0.0] * n

    lowered = [d.lower() for d in documents]
    df = {term: 0 for term in query_terms}
    for text in lowered:
        for term in df:
            if term in text:
                df[term] += 1
    idf = {
        term: math.log((n - df[term] + 0.5) / (df[term] + 0.5) + 1)
        for term in df
    }
    avg_dl = (sum(len(t) for t in lowered) / n) or 1.0

    scores: list[float] = []
    for text in lowered:
        norm = k1 * (1 - b + b * (len(text) / avg_dl))
        score = 0.0
        for term in query_terms:
            tf = text.count(term)
            if tf == 0:
                continue
            score += idf[term] * (tf * (k1 + 1)) / (tf + norm)
        scores.append(score)
    return scores


def sort_by_score(results: Iterable[QueryResult]) -> list[QueryResult]:
    """Stable sort, score descending; equal scores keep their input order."""
    return sorted(results, key=lambda r: -r.score)


def merge_hybrid(
    vector_results: Sequence[QueryResult],
    keyword_results: Sequence[QueryResult],
    vector_weight: float = 0.7,
    keyword_weight: float = 0.3,
) -> list[QueryResult]:
    """
    Merge by chunk id, missing sub-scores count as 0, and score each chunk
    ``vector_weight * v + keyword_weight * k``.  When the weights sum past
    1 the combined score is divided by that sum so it stays within [0, 1].
    """
    scale = max(1.0, vector_weight + keyword_weight)
    merged: dict[str, QueryResult] = {}
    for r in vector_results:
        merged[r.chunk_id] = dataclasses.replace(
            r, method="hybrid", vector_score=r.score, keyword_score=0.0,
        )
    for r in keyword_results:
        if r.chunk_id in merged:
            merged[r.chunk_id].keyword_score = r.score
        else:
            merged[r.chunk_id] = dataclasses.replace(
                r, method="hybrid", vector_score=0.0, keyword_score=r.score,
            )
    for r in merged.values():
        r.score = (vector_weight * r.vector_score + keyword_weight * r.keyword_score) / scale
    return sort_by_score(merged.values())


def mmr_select(
    relevance: Sequence[float],
    vectors: np.ndarray,
    limit: int,
    mmr_lambda: float = 0.5,
) -> list[int]:
    """
    Greedy Maximal Marginal Relevance selection.

    At each step pick the remaining candidate maximising
    ``lambda * relevance - (1 - lambda) * max_cosine_to_selected``.  The
    first candidate in pool order wins ties.

    Returns
    -------
    list[int]
        Pool indices in selection order.
    """
    n = len(relevance)
    if n == 0 or limit <= 0:
        return []
    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0] = 1.0
    unit = matrix / norms[:, None]
    pairwise = unit @ unit.T

    selected: list[int] = []
    remaining = list(range(n))
    # Similarity to the closest selected item; floors at 0 before any pick.
    max_sim = np.zeros(n)
    while remaining and len(selected) < limit:
        best_idx = remaining[0]
        best_score = -math.inf
        for i in remaining:
            score = mmr_lambda * relevance[i] - (1 - mmr_lambda) * max_sim[i]
            if score > best_score:
                best_score = score
                best_idx = i
        selected.append(best_idx)
        remaining.remove(best_idx)
        max_sim = np.maximum(max_sim, pairwise[best_idx])
    return selected


def generate_query_variations(query: str) -> list[str]:
    """
    Up to four phrasings of *query*: the original, its content words with
    stop words removed (when that differs), and ``"what is <query>"`` (when
    the query does not already start with "what").
    """
    variations = [query]
    lowered = query.lower().strip()
    content = [w for w in lowered.split() if len(w) > 1 and w not in STOP_WORDS]
    if content and " ".join(content) != lowered:
        variations.append(" ".join(content))
    if not lowered.startswith("what"):
        variations.append(f"what is {query}")
    return variations[:MAX_QUERY_VARIATIONS]


def rrf_fuse(
    ranked_lists: Sequence[Sequence[QueryResult]],
    k: int = RRF_K,
) -> list[QueryResult]:
    """
    Reciprocal Rank Fusion.  A chunk at 0-based rank ``r`` in a list
    contributes ``1 / (k + r + 1)``; contributions are summed across lists.
    Returns fused results with raw (unnormalised) scores, best first.
    """
    fused: dict[str, QueryResult] = {}
    for results in ranked_lists:
        for rank, r in enumerate(results):
            contribution = 1.0 / (k + rank + 1)
            if r.chunk_id in fused:
                fused[r.chunk_id].score += contribution
            else:
                fused[r.chunk_id] = dataclasses.replace(
                    r, method="multi_query", score=contribution,
                )
    return sort_by_score(fused.values())


def normalize_by_top(results: list[QueryResult]) -> list[QueryResult]:
    """Divide every score by the first (highest) one so the best is 1.0."""
    if results and results[0].score > 0:
        top = results[0].score
        for r in results:
            r.score = r.score / top
    return results


def apply_metadata_filter(
    results: Iterable[QueryResult], metadata_filter: Optional[MetadataFilter]
) -> list[QueryResult]:
    """Post-filter helper for results produced outside a filtering store."""
    if metadata_filter is None or metadata_filter.is_empty():
        return list(results)
    return [r for r in results if metadata_filter.matches(r)]


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------

class Retriever:
    """
    Runs retrieval methods against a store and an embedding provider.

    Parameters
    ----------
    store:
        Any :class:`~knowledge_engine.store.ChunkStore`.
    provider:
        Any :class:`~knowledge_engine.providers.EmbeddingProvider`.
    max_scan:
        Default row cap for the in-memory keyword scan.
    """

    def __init__(self, store, provider, max_scan: int = DEFAULT_MAX_SCAN) -> None:
        self._store = store
        self._provider = provider
        self._max_scan = max_scan

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        method: str = DEFAULT_METHOD,
        limit: int = 10,
        metadata_filter: Optional[MetadataFilter | dict] = None,
        options: Optional[SearchOptions | dict] = None,
        token: Optional[CancelToken] = None,
    ) -> SearchResults:
        """
        Search with the named method.  Unknown method names fall back to
        ``hybrid`` and record an ``InvalidMethod`` warning.

        Raises
        ------
        EmptyInputError
            If *query* is blank.
        ValueError
            If *options* or a date bound in *metadata_filter* is invalid.
        KnowledgeBaseError
            If the search could not be executed.
        """
        if not query or not query.strip():
            raise EmptyInputError("Query text is empty")
        if isinstance(metadata_filter, dict):
            metadata_filter = MetadataFilter.from_dict(metadata_filter)
        if isinstance(options, SearchOptions):
            options.validate()
        else:
            options = SearchOptions.from_dict(options)

        name = (method or DEFAULT_METHOD).lower()
        warnings: list[tuple[ErrorKind, str]] = []
        if name not in METHODS:
            message = f"Unknown search method {method!r}; using {DEFAULT_METHOD!r}"
            logger.warning(message)
            warnings.append((ErrorKind.INVALID_METHOD, message))
            name = DEFAULT_METHOD

        if limit <= 0:
            return SearchResults(method=name, query=query, warnings=warnings)

        t0 = time.perf_counter()
        if name == "vector":
            vector = self._provider.embed(query, token=token)
            results = self.vector_search(vector, limit, metadata_filter, token)
        elif name == "keyword":
            results = self.keyword_search(query, limit, metadata_filter,
                                          max_scan=options.max_scan, token=token)
        elif name == "hybrid":
            results = self.hybrid_search(query, limit, metadata_filter, options, token)
        elif name == "mmr":
            vector = self._provider.embed(query, token=token)
            results = self.mmr_search(vector, limit, metadata_filter, options, token)
        else:
            results = self.multi_query_search(query, limit, metadata_filter, options, token)

        results.method = name
        results.query = query
        results.warnings = warnings + results.warnings
        elapsed = (time.perf_counter() - t0) * 1000
        logger.info("%s search returned %d results in %.1fms", name, len(results), elapsed)
        return results

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _filtered(
        self, chunks: Iterable[Chunk], metadata_filter: Optional[MetadataFilter]
    ) -> list[Chunk]:
        # Stores push filters down; re-checking keeps semantics identical for
        # stores that cannot.
        if metadata_filter is None or metadata_filter.is_empty():
            return list(chunks)
        return [c for c in chunks if metadata_filter.matches(c)]

    def _nearest(
        self,
        query_vector: list[float],
        limit: int,
        metadata_filter: Optional[MetadataFilter],
        token: Optional[CancelToken],
    ) -> list[tuple[Chunk, float]]:
        hits = self._store.vector_search(query_vector, limit, metadata_filter, token=token)
        if metadata_filter is None or metadata_filter.is_empty():
            return hits
        return [(c, d) for c, d in hits if metadata_filter.matches(c)]

    def vector_search(
        self,
        query_vector: list[float],
        limit: int = 10,
        metadata_filter: Optional[MetadataFilter] = None,
        token: Optional[CancelToken] = None,
    ) -> SearchResults:
        """Nearest chunks scored ``1 / (1 + distance)``."""
        check_token(token)
        hits = self._nearest(query_vector, limit, metadata_filter, token)
        results = [
            QueryResult.from_chunk(chunk, distance_to_score(distance), "vector")
            for chunk, distance in hits
        ]
        return SearchResults(sort_by_score(results)[:limit], method="vector")

    def keyword_search(
        self,
        query: str,
        limit: int = 10,
        metadata_filter: Optional[MetadataFilter] = None,
        max_scan: Optional[int] = None,
        token: Optional[CancelToken] = None,
    ) -> SearchResults:
        """
        BM25 over at most *max_scan* filter-matching chunks, normalised so
        the best match scores 1.0.  Zero-score chunks are dropped.  A scan
        that hits the cap adds a ``ScanLimitExceeded`` warning.
        """
        check_token(token)
        cap = max_scan or self._max_scan
        out = SearchResults(method="keyword", query=query)

        terms = tokenize_query(query)
        if not terms:
            return out

        # One extra row tells a full pool apart from a truncated one.
        rows = self._store.scan(metadata_filter, cap + 1, token=token)
        if len(rows) > cap:
            rows = rows[:cap]
            message = f"Keyword scan truncated at {cap} chunks"
            logger.warning(message)
            out.add_warning(ErrorKind.SCAN_LIMIT_EXCEEDED, message)
        rows = self._filtered(rows, metadata_filter)
        if not rows:
            return out

        check_token(token)
        scores = bm25_scores(terms, [c.text for c in rows])
        scored = [
            QueryResult.from_chunk(chunk, score, "keyword")
            for chunk, score in zip(rows, scores)
            if score > 0
        ]
        out.extend(normalize_by_top(sort_by_score(scored))[:limit])
        return out

    def hybrid_search(
        self,
        query: str,
        limit: int = 10,
        metadata_filter: Optional[MetadataFilter] = None,
        options: Optional[SearchOptions] = None,
        token: Optional[CancelToken] = None,
        query_vector: Optional[list[float]] = None,
    ) -> SearchResults:
        """
        Vector and keyword branches run concurrently, each asking for
        ``3 * limit`` candidates, then merge via :func:`merge_hybrid`.
        """
        options = options or SearchOptions()
        candidate_limit = limit * HYBRID_CANDIDATE_FACTOR

        def _vector_branch() -> SearchResults:
            vector = query_vector
            if vector is None:
                vector = self._provider.embed(query, token=token)
            return self.vector_search(vector, candidate_limit, metadata_filter, token)

        def _keyword_branch() -> SearchResults:
            return self.keyword_search(query, candidate_limit, metadata_filter,
                                       max_scan=options.max_scan, token=token)

        vector_results, keyword_results = self._run_branches(
            [_vector_branch, _keyword_branch], token
        )
        merged = merge_hybrid(
            vector_results, keyword_results,
            options.vector_weight, options.keyword_weight,
        )
        out = SearchResults(merged[:limit], method="hybrid", query=query)
        for kind, message in keyword_results.warnings:
            out.add_warning(kind, message)
        return out

    def mmr_search(
        self,
        query_vector: list[float],
        limit: int = 10,
        metadata_filter: Optional[MetadataFilter] = None,
        options: Optional[SearchOptions] = None,
        token: Optional[CancelToken] = None,
    ) -> SearchResults:
        """
        Diversity-aware selection from a vector candidate pool.  The selected
        set is reported best-relevance first; ``selection_rank`` keeps the
        order in which MMR picked each item.
        """
        options = options or SearchOptions()
        check_token(token)
        pool = self._nearest(query_vector, max(options.candidates, limit),
                             metadata_filter, token)
        if not pool:
            return SearchResults(method="mmr")

        relevance = [distance_to_score(d) for _, d in pool]
        vectors = np.asarray([c.vector for c, _ in pool], dtype=np.float64)
        picks = mmr_select(relevance, vectors, limit, options.mmr_lambda)

        results = []
        for rank, idx in enumerate(picks):
            result = QueryResult.from_chunk(pool[idx][0], relevance[idx], "mmr")
            result.selection_rank = rank
            results.append(result)
        return SearchResults(sort_by_score(results), method="mmr")

    def multi_query_search(
        self,
        query: str,
        limit: int = 10,
        metadata_filter: Optional[MetadataFilter] = None,
        options: Optional[SearchOptions] = None,
        token: Optional[CancelToken] = None,
    ) -> SearchResults:
        """
        Embed all query variations in one batch, search each concurrently
        for ``2 * limit`` results, and fuse the lists with RRF.
        """
        options = options or SearchOptions()
        variations = generate_query_variations(query)
        vectors = self._provider.embed_batch(variations, token=token)
        per_variant = limit * MULTI_QUERY_CANDIDATE_FACTOR

        def _branch(text: str, vector: list[float]) -> Callable[[], SearchResults]:
            if options.sub_method == "hybrid":
                return lambda: self.hybrid_search(text, per_variant, metadata_filter,
                                                  options, token, query_vector=vector)
            return lambda: self.vector_search(vector, per_variant, metadata_filter, token)

        branches = [_branch(t, v) for t, v in zip(variations, vectors)]
        ranked_lists = self._run_branches(branches, token)
        logger.debug("multi_query variations: %s", variations)

        fused = normalize_by_top(rrf_fuse(ranked_lists))[:limit]
        out = SearchResults(fused, method="multi_query", query=query)
        for results in ranked_lists:
            for kind, message in results.warnings:
                out.add_warning(kind, message)
        return out

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    def _run_branches(
        self,
        branches: Sequence[Callable[[], SearchResults]],
        token: Optional[CancelToken],
    ) -> list[SearchResults]:
        """
        Run independent read branches concurrently and wait for all of them.
        Any failure fails the whole call with :class:`SearchExecutionError`.
        """
        check_token(token)
        with ThreadPoolExecutor(max_workers=len(branches),
                                thread_name_prefix="kb-search") as executor:
            futures = [executor.submit(branch) for branch in branches]
            wait(futures)

        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            if all(isinstance(e, OperationCancelledError) for e in errors):
                raise errors[0]
            summary = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
            raise SearchExecutionError(
                f"{len(errors)} of {len(branches)} search branches failed: {summary}",
                errors=errors,
            ) from errors[0]
        return [f.result() for f in futures]
