"""
Unit tests for knowledge_engine.retrieval

Pure scoring helpers are tested directly; the five methods run against an
in-memory SQLite store with the hashing fake provider.
"""

from __future__ import annotations

from unittest.mock import patch

import numpy as np
import pytest

from knowledge_engine.errors import (
    EmptyInputError,
    ErrorKind,
    OperationCancelledError,
    SearchExecutionError,
    StoreUnavailableError,
)
from knowledge_engine.ingest import Ingestor
from knowledge_engine.models import MetadataFilter, QueryResult
from knowledge_engine.pool import CancelToken
from knowledge_engine.retrieval import (
    METHODS,
    Retriever,
    SearchOptions,
    apply_metadata_filter,
    bm25_scores,
    generate_query_variations,
    merge_hybrid,
    mmr_select,
    rrf_fuse,
    tokenize_query,
)

ANIMALS = "Cats are mammals. Dogs are mammals too. The sky is blue."


def _result(chunk_id: str, score: float = 1.0, tags=()) -> QueryResult:
    return QueryResult(
        chunk_id=chunk_id, parent_id="p-" + chunk_id, text=chunk_id, score=score,
        method="vector", title="t", source="user", confidence="medium",
        tags=tuple(tags), content_type="fact", chunk_index=0, chunk_count=1,
        chunk_strategy="sentence", created_at="2024-01-01T00:00:00.000Z",
    )


@pytest.fixture
def ingestor(store, provider):
    return Ingestor(store, provider)


@pytest.fixture
def retriever(store, provider):
    return Retriever(store, provider)


@pytest.fixture
def animals(ingestor):
    return ingestor.ingest(ANIMALS, strategy="sentence",
                           strategy_options={"sentences_per_chunk": 2})


@pytest.fixture
def corpus(ingestor):
    docs = [
        ("Engineering notes: the build server compiles code nightly.", ["engineering"]),
        ("Engineering notes: deploys run after the tests pass.", ["engineering", "ops"]),
        ("Cooking notes: bread needs flour, water and patience.", ["kitchen"]),
        ("Garden notes: tomatoes need sun and water daily.", ["garden"]),
        ("Travel notes: trains in spring are quiet and cheap.", []),
    ]
    return [ingestor.ingest(text, tags=tags) for text, tags in docs]


# ---------------------------------------------------------------------------
# Tests: pure helpers
# ---------------------------------------------------------------------------

class TestBM25:
    def test_tokenize_drops_single_characters(self):
        assert tokenize_query("A cat is a Mammal") == ["cat", "is", "mammal"]

    def test_matching_document_outscores_non_matching(self):
        scores = bm25_scores(["mammals"], [
            "cats are mammals. dogs are mammals too.", "the sky is blue.",
        ])
        assert scores[0] > 0
        assert scores[1] == 0

    def test_substring_occurrences_count(self):
        scores = bm25_scores(["cat"], ["category", "dog"])
        assert scores[0] > 0

    def test_more_occurrences_score_higher(self):
        scores = bm25_scores(["api"], ["api api api docs", "api docs here ok"])
        assert scores[0] > scores[1]

    def test_empty_inputs(self):
        assert bm25_scores([], ["x"]) == [0.0]
        assert bm25_scores(["x"], []) == []


class TestMergeHybrid:
    def test_default_weights(self):
        merged = merge_hybrid(
            [_result("a", 1.0), _result("b", 0.5)],
            [_result("b", 1.0), _result("c", 0.8)],
        )
        assert [r.chunk_id for r in merged] == ["a", "b", "c"]
        assert merged[0].score == pytest.approx(0.7)
        assert merged[1].score == pytest.approx(0.65)
        assert merged[2].score == pytest.approx(0.24)
        assert merged[2].vector_score == 0.0
        assert merged[1].keyword_score == 1.0

    def test_weights_above_one_stay_bounded(self):
        merged = merge_hybrid([_result("a", 1.0)], [_result("a", 1.0)], 1.0, 1.0)
        assert merged[0].score == pytest.approx(1.0)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError):
            SearchOptions.from_dict({"vector_weight": -0.1})


class TestMMRSelect:
    def test_lambda_one_is_relevance_order(self):
        vectors = np.eye(3)
        assert mmr_select([0.9, 0.8, 0.7], vectors, 3, mmr_lambda=1.0) == [0, 1, 2]

    def test_lambda_zero_avoids_near_duplicates(self):
        vectors = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        assert mmr_select([0.9, 0.85, 0.5], vectors, 3, mmr_lambda=0.0) == [0, 2, 1]

    def test_ties_go_to_pool_order(self):
        vectors = np.eye(2)
        assert mmr_select([0.5, 0.5], vectors, 1) == [0]

    def test_limit_caps_selection(self):
        assert len(mmr_select([0.9, 0.8, 0.7], np.eye(3), 2)) == 2


class TestRRF:
    def test_consistent_top_rank_beats_single_appearance(self):
        fused_all = rrf_fuse([[_result("a")] for _ in range(4)])
        fused_one = rrf_fuse([[_result("z")]])
        assert fused_all[0].score > fused_one[0].score
        assert fused_all[0].score == pytest.approx(4 / 61)
        assert fused_one[0].score == pytest.approx(1 / 61)

    def test_sums_across_lists_and_sorts(self):
        fused = rrf_fuse([[_result("a"), _result("b")], [_result("b"), _result("c")]])
        assert [r.chunk_id for r in fused] == ["b", "a", "c"]
        assert fused[0].score == pytest.approx(1 / 62 + 1 / 61)
        assert all(r.method == "multi_query" for r in fused)


class TestQueryVariations:
    def test_plain_query(self):
        assert generate_query_variations("mammals") == ["mammals", "what is mammals"]

    def test_stop_words_stripped(self):
        assert generate_query_variations("the cats of egypt") == [
            "the cats of egypt", "cats egypt", "what is the cats of egypt",
        ]

    def test_what_question_gets_no_what_variant(self):
        assert generate_query_variations("What is a cat") == ["What is a cat", "cat"]


class TestApplyMetadataFilter:
    def test_tags_match_any(self):
        results = [_result("a", tags=["x"]), _result("b", tags=["y"]), _result("c")]
        kept = apply_metadata_filter(results, MetadataFilter.build(tags=["y", "x"]))
        assert [r.chunk_id for r in kept] == ["a", "b"]

    def test_no_filter_keeps_everything(self):
        assert len(apply_metadata_filter([_result("a")], None)) == 1


# ---------------------------------------------------------------------------
# Tests: Retriever
# ---------------------------------------------------------------------------

class TestKeywordSearch:
    def test_mammals_scenario(self, retriever, animals, provider):
        calls_before = len(provider.calls)
        results = retriever.search("mammals", method="keyword")
        assert [r.text for r in results] == ["Cats are mammals. Dogs are mammals too."]
        assert results[0].score == pytest.approx(1.0)
        assert len(provider.calls) == calls_before

    def test_scan_limit_reported_as_warning(self, store, provider, corpus):
        capped = Retriever(store, provider, max_scan=2)
        results = capped.search("notes", method="keyword")
        assert results.truncated
        assert results.warnings[0][0] is ErrorKind.SCAN_LIMIT_EXCEEDED
        assert len(results) <= 2

    def test_single_char_query_matches_nothing(self, retriever, animals):
        assert list(retriever.search("a", method="keyword")) == []


class TestVectorSearch:
    def test_limit_and_ordering(self, retriever, corpus):
        results = retriever.search("engineering notes", method="vector", limit=3)
        assert len(results) == 3
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 < s <= 1.0 for s in scores)

    def test_exact_text_scores_one(self, retriever, animals):
        results = retriever.search("The sky is blue.", method="vector", limit=1)
        assert results[0].text == "The sky is blue."
        assert results[0].score == pytest.approx(1.0, abs=1e-5)


class TestHybridSearch:
    def test_carries_sub_scores(self, retriever, animals):
        results = retriever.search("mammals", method="hybrid")
        top = results[0]
        assert top.text.startswith("Cats")
        assert top.keyword_score == pytest.approx(1.0)
        assert top.score == pytest.approx(0.7 * top.vector_score + 0.3)

    def test_branch_failure_fails_whole_search(self, store, retriever, animals):
        with patch.object(store, "scan", side_effect=StoreUnavailableError("down")):
            with pytest.raises(SearchExecutionError) as exc_info:
                retriever.search("mammals", method="hybrid")
        assert isinstance(exc_info.value.errors[0], StoreUnavailableError)


class TestMMRSearch:
    def test_lambda_one_matches_vector_ranking(self, retriever, corpus):
        vector = [r.chunk_id for r in retriever.search("notes water", method="vector", limit=4)]
        mmr = retriever.search("notes water", method="mmr", limit=4, options={"lambda": 1.0})
        assert [r.chunk_id for r in mmr] == vector
        assert [r.selection_rank for r in mmr] == [0, 1, 2, 3]

    def test_results_sorted_by_relevance(self, retriever, corpus):
        results = retriever.search("engineering notes", method="mmr", limit=3,
                                   options={"lambda": 0.0})
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert sorted(r.selection_rank for r in results) == [0, 1, 2]


class TestMultiQuerySearch:
    def test_one_batched_embedding_call(self, retriever, corpus, provider):
        calls_before = len(provider.calls)
        results = retriever.search("the engineering notes", method="multi_query", limit=3)
        assert len(provider.calls) == calls_before + 1
        assert len(provider.calls[-1]) == 3
        assert results[0].score == pytest.approx(1.0)
        assert len(results) <= 3

    def test_hybrid_sub_method(self, retriever, corpus):
        results = retriever.search("engineering", method="multi_query",
                                   options={"sub_method": "hybrid"})
        assert results
        assert all(r.method == "multi_query" for r in results)


class TestDispatcher:
    @pytest.mark.parametrize("method", METHODS)
    def test_tag_filter_applies_to_every_method(self, retriever, corpus, method):
        results = retriever.search("notes", method=method,
                                   metadata_filter={"tags": ["engineering"]})
        assert results
        assert all("engineering" in r.tags for r in results)

    @pytest.mark.parametrize("method", METHODS)
    def test_limit_cap_and_score_range(self, retriever, corpus, method):
        results = retriever.search("notes water", method=method, limit=2)
        assert len(results) <= 2
        assert all(0.0 <= r.score <= 1.0 for r in results)
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.parametrize("method", METHODS)
    def test_empty_store_gives_empty_result(self, retriever, method):
        assert list(retriever.search("anything at all", method=method)) == []

    def test_idempotent(self, retriever, corpus):
        first = retriever.search("notes water", method="hybrid")
        second = retriever.search("notes water", method="hybrid")
        assert [(r.chunk_id, r.score) for r in first] == [(r.chunk_id, r.score) for r in second]

    def test_unknown_method_falls_back_to_hybrid(self, retriever, animals):
        results = retriever.search("mammals", method="telepathy")
        assert results.method == "hybrid"
        assert results.warnings[0][0] is ErrorKind.INVALID_METHOD

    def test_blank_query_rejected(self, retriever):
        with pytest.raises(EmptyInputError):
            retriever.search("   ")

    def test_zero_limit_returns_nothing(self, retriever, animals):
        assert list(retriever.search("mammals", limit=0)) == []

    def test_date_filter(self, retriever, ingestor):
        ingestor.ingest("Old notes about mammals.", created_at="2020-05-01T10:00:00.000Z")
        ingestor.ingest("New notes about mammals.", created_at="2024-05-01T10:00:00.000Z")
        results = retriever.search(
            "mammals", method="keyword",
            metadata_filter={"date_range": {"from": "2020-01-01", "to": "2020-05-01"}},
        )
        assert [r.text for r in results] == ["Old notes about mammals."]

    def test_to_dict(self, retriever, animals):
        data = retriever.search("mammals", method="keyword").to_dict()
        assert data["method"] == "keyword"
        assert data["total_results"] == 1
        assert data["results"][0]["tags"] == []

    def test_timestamp_bounds_without_milliseconds(self, retriever, ingestor):
        ingestor.ingest("Notes about mammals.", created_at="2024-01-01T00:00:00.500Z")
        results = retriever.search(
            "mammals", method="keyword",
            metadata_filter={"date_range": {"from": "2024-01-01T00:00:00Z",
                                            "to": "2024-01-01T00:00:01+00:00"}},
        )
        assert [r.text for r in results] == ["Notes about mammals."]

    def test_unparseable_date_bound_rejected(self, retriever, animals):
        with pytest.raises(ValueError):
            retriever.search("mammals", metadata_filter={"date_range": {"from": "last week"}})

    @pytest.mark.parametrize("options", [
        SearchOptions(vector_weight=-5.0),
        SearchOptions(mmr_lambda=1.5),
        SearchOptions(candidates=0),
    ])
    def test_invalid_options_instance_rejected(self, retriever, animals, options):
        with pytest.raises(ValueError):
            retriever.search("mammals", method="hybrid", options=options)


class TestCancellation:
    @pytest.mark.parametrize("method", ["hybrid", "multi_query"])
    def test_cancelled_token_stops_search(self, retriever, corpus, method):
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            retriever.search("notes water", method=method, token=token)

    def test_branch_cancellation_is_not_wrapped(self, retriever, corpus, provider):
        token = CancelToken()

        def _cancel(texts, timeout):
            token.cancel()
            raise OperationCancelledError("cancelled mid-request")

        with patch.object(provider, "_request_embeddings", side_effect=_cancel):
            with pytest.raises(OperationCancelledError):
                retriever.search("notes water", method="hybrid", token=token)

    def test_expired_deadline_stops_search(self, retriever, corpus):
        with pytest.raises(OperationCancelledError):
            retriever.search("notes", method="vector", token=CancelToken(timeout=0))
