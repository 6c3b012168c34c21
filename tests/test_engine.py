"""
Unit tests for the KnowledgeEngine facade.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from knowledge_engine.config import Config
from knowledge_engine.engine import KnowledgeEngine
from knowledge_engine.errors import EntryNotFoundError
from knowledge_engine.providers.ollama import OllamaProvider
from knowledge_engine.store.sqlite_store import SQLiteChunkStore

ANIMALS = "Cats are mammals. Dogs are mammals too. The sky is blue."


class TestKnowledgeEngine:
    def test_ingest_then_search_with_config_defaults(self, engine):
        engine.ingest(ANIMALS, strategy="sentence", strategy_options={"sentences_per_chunk": 2})
        results = engine.search("mammals")
        assert results.method == "hybrid"
        assert results[0].text.startswith("Cats")
        assert len(results) <= engine.config.DEFAULT_LIMIT

    def test_default_method_from_config(self, store, provider):
        engine = KnowledgeEngine(store, provider, Config(default_search_method="keyword"))
        engine.ingest(ANIMALS, strategy="sentence", strategy_options={"sentences_per_chunk": 2})
        assert engine.search("mammals").method == "keyword"

    def test_delete_entry(self, engine):
        receipt = engine.ingest(ANIMALS, strategy="sentence")
        assert engine.delete_entry(receipt.id) == receipt.chunk_count
        assert engine.store.count_chunks() == 0
        with pytest.raises(EntryNotFoundError):
            engine.delete_entry(receipt.id)

    def test_get_entry_with_chunks(self, engine):
        receipt = engine.ingest(ANIMALS, strategy="sentence",
                                strategy_options={"sentences_per_chunk": 1})
        data = engine.get_entry_with_chunks(receipt.id)
        assert data["id"] == receipt.id
        assert [c["chunk_index"] for c in data["chunks"]] == [0, 1, 2]
        assert all("vector" not in c for c in data["chunks"])
        with pytest.raises(EntryNotFoundError):
            engine.get_entry_with_chunks("nope")

    def test_list_entries(self, engine):
        engine.ingest("First.", created_at="2024-01-01T00:00:00.000Z")
        engine.ingest("Second.", created_at="2024-02-01T00:00:00.000Z")
        entries, total = engine.list_entries(0, 10)
        assert total == 2
        assert [e.original_text for e in entries] == ["Second.", "First."]

    def test_stats(self, engine):
        engine.ingest(ANIMALS, strategy="sentence", source="web")
        engine.ingest("Short fact.", confidence="high")
        stats = engine.stats()
        assert stats["entry_count"] == 2
        assert stats["chunk_count"] == 2
        assert stats["avg_chunks_per_entry"] == 1.0
        assert stats["by_strategy"] == {"paragraph": 1, "sentence": 1}
        assert stats["by_source"] == {"user": 1, "web": 1}
        assert stats["by_confidence"] == {"high": 1, "medium": 1}
        assert stats["embedding_model"] == "fake-embed"
        assert stats["vector_dimensions"] == 32
        assert stats["provider_status"] == "online"

    def test_stats_empty_and_offline(self, engine, provider):
        provider.available = False
        stats = engine.stats()
        assert stats["entry_count"] == 0
        assert stats["avg_chunks_per_entry"] == 0.0
        assert stats["provider_status"] == "offline"

    def test_context_manager_closes_store(self, store, provider):
        with patch.object(store, "close") as close:
            with KnowledgeEngine(store, provider):
                pass
        close.assert_called_once()

    def test_from_config(self, tmp_path):
        config = Config(db_path=str(tmp_path / "kb.db"), vector_dim=8)
        with KnowledgeEngine.from_config(config) as engine:
            assert isinstance(engine.store, SQLiteChunkStore)
            assert isinstance(engine.provider, OllamaProvider)
            assert engine.provider.dimension == 8
