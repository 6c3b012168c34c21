"""
Shared fixtures: a deterministic offline embedding provider and an
in-memory SQLite store.
"""

from __future__ import annotations

import hashlib
import math
import re
import threading

import pytest

from knowledge_engine.config import Config
from knowledge_engine.engine import KnowledgeEngine
from knowledge_engine.errors import ProviderUnavailableError
from knowledge_engine.providers.base import EmbeddingProvider
from knowledge_engine.store.sqlite_store import SQLiteChunkStore

_WORD = re.compile(r"[a-z0-9]+")


class FakeProvider(EmbeddingProvider):
    """Hashing bag-of-words embeddings: texts sharing words look alike."""

    name = "fake"
    batch_size = 8

    def __init__(self, dimension: int = 32, fail: bool = False, available: bool = True):
        super().__init__(model="fake-embed", dimension=dimension,
                         concurrency=2, max_retries=0, retry_delay=0.0)
        self.fail = fail
        self.available = available
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    def vector_for(self, text: str) -> list[float]:
        vec = [0.0] * self.dimension
        for word in _WORD.findall(text.lower()):
            h = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16)
            vec[h % self.dimension] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        return [v / norm for v in vec] if norm else vec

    def _request_embeddings(self, texts, timeout):
        with self._lock:
            self.calls.append(list(texts))
        if self.fail:
            raise ProviderUnavailableError("fake provider is down")
        return [self.vector_for(t) for t in texts]

    def is_available(self) -> bool:
        return self.available


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store():
    s = SQLiteChunkStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def config():
    return Config(db_path=":memory:", log_level="WARNING")


@pytest.fixture
def engine(store, provider, config):
    return KnowledgeEngine(store, provider, config)
