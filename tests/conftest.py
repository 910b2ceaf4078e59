"""
Shared pytest fixtures for the embedding worker tests.

Provides a keyword-based fake embedder so no ML model is ever loaded, and
in-memory stand-ins for the host's key-value layer.
"""

import asyncio
import hashlib
from collections.abc import Sequence

import numpy as np
import pytest

from marginalia.core.config import Settings
from marginalia.infrastructure.embeddings.cache import PersistentEmbeddingCache
from marginalia.infrastructure.embeddings.model import EmbeddingModel
from marginalia.services.embedding_store import EmbeddingStore
from marginalia.services.query_engine import QueryEngine

DIM = 8

# Feature slot -> stems that light it up
KEYWORDS = {
    0: ("cat",),
    1: ("dog",),
    2: ("econom", "policy", "debate"),
    3: ("sea", "ocean"),
}


def keyword_vector(text: str) -> np.ndarray:
    """Deterministic 8-d vector: keyword counts plus a small hash-derived tail."""
    lowered = text.lower()
    vector = np.zeros(DIM, dtype=np.float32)
    for slot, stems in KEYWORDS.items():
        vector[slot] = sum(lowered.count(stem) for stem in stems)
    digest = hashlib.md5(text.encode()).digest()
    vector[4:] = [b / 255.0 * 0.1 for b in digest[:4]]
    return vector


class KeywordEmbedder:
    """Async embedder that records every batch it is asked to embed."""

    def __init__(self):
        self.batches: list[list[str]] = []
        self.gate: asyncio.Event | None = None
        self.fail_next = False

    @property
    def calls(self) -> int:
        return len(self.batches)

    @property
    def texts(self) -> list[str]:
        return [text for batch in self.batches for text in batch]

    async def __call__(self, texts: list[str]) -> np.ndarray:
        self.batches.append(list(texts))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("backend exploded")
        return np.stack([keyword_vector(text) for text in texts])


class CountingFactory:
    """EmbedderFactory that can fail a set number of times before succeeding."""

    def __init__(self, embedder: KeywordEmbedder, failures: int = 0):
        self.embedder = embedder
        self.failures = failures
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> KeywordEmbedder:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("model download failed")
        return self.embedder


class InMemoryKeyValueBackend:
    """Dict-backed KeyValueBackend with call counters.

    Setting ``read_gate`` or ``write_gate`` holds ``get_many`` or ``set_many``
    until the event is set, to simulate a slow storage layer.
    """

    def __init__(self, data: dict[str, bytes] | None = None):
        self.data: dict[str, bytes] = dict(data or {})
        self.get_many_calls = 0
        self.set_many_calls = 0
        self.delete_many_calls = 0
        self.read_gate: asyncio.Event | None = None
        self.write_gate: asyncio.Event | None = None

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self.data)

    async def get_many(self, keys: Sequence[str]) -> list[bytes | None]:
        self.get_many_calls += 1
        snapshot = [self.data.get(key) for key in keys]
        if self.read_gate is not None:
            await self.read_gate.wait()
        return snapshot

    async def set_many(self, items: Sequence[tuple[str, bytes]]) -> None:
        self.set_many_calls += 1
        if self.write_gate is not None:
            await self.write_gate.wait()
        self.data.update(items)

    async def delete_many(self, keys: Sequence[str]) -> None:
        self.delete_many_calls += 1
        for key in keys:
            self.data.pop(key, None)


class BrokenKeyValueBackend(InMemoryKeyValueBackend):
    """Every call fails, as if the host's storage were gone."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def keys(self) -> list[str]:
        self.attempts += 1
        raise ConnectionError("storage unavailable")

    async def get_many(self, keys: Sequence[str]) -> list[bytes | None]:
        self.attempts += 1
        raise ConnectionError("storage unavailable")

    async def set_many(self, items: Sequence[tuple[str, bytes]]) -> None:
        self.attempts += 1
        raise ConnectionError("storage unavailable")

    async def delete_many(self, keys: Sequence[str]) -> None:
        self.attempts += 1
        raise ConnectionError("storage unavailable")


@pytest.fixture
def config() -> Settings:
    return Settings(
        _env_file=None,
        embedding_dim=DIM,
        neighbors_k=5,
        semantic_search_limit=203,
        storage_namespace="test:embeddings",
    )


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def factory(embedder) -> CountingFactory:
    return CountingFactory(embedder)


@pytest.fixture
def model(factory) -> EmbeddingModel:
    return EmbeddingModel(factory, dimension=DIM, name="keyword-test-model")


@pytest.fixture
def backend() -> InMemoryKeyValueBackend:
    return InMemoryKeyValueBackend()


@pytest.fixture
def cache(backend) -> PersistentEmbeddingCache:
    return PersistentEmbeddingCache(backend, namespace="test:embeddings", dimension=DIM)


@pytest.fixture
def store(model, cache) -> EmbeddingStore:
    return EmbeddingStore(model, cache, dimension=DIM)


@pytest.fixture
def engine(store, config) -> QueryEngine:
    return QueryEngine(store, config=config)
