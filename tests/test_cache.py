"""Tests for PersistentEmbeddingCache encoding and memory-only degradation."""

import numpy as np

from marginalia.infrastructure.embeddings.cache import (
    KeyValueBackend,
    PersistentEmbeddingCache,
    decode_vector,
    encode_vector,
)

from .conftest import DIM, BrokenKeyValueBackend, InMemoryKeyValueBackend


def vec(*values: float) -> np.ndarray:
    padded = list(values) + [0.0] * (DIM - len(values))
    return np.asarray(padded, dtype=np.float32)


def test_encoding_is_little_endian_float32():
    blob = encode_vector(vec(1.0, -2.5))

    assert len(blob) == DIM * 4
    assert blob[:4] == b"\x00\x00\x80?"
    np.testing.assert_array_equal(decode_vector(blob, DIM), vec(1.0, -2.5))


def test_decode_rejects_wrong_size():
    assert decode_vector(b"\x00" * 12, DIM) is None


def test_in_memory_backend_satisfies_protocol():
    assert isinstance(InMemoryKeyValueBackend(), KeyValueBackend)


async def test_store_and_load_round_trip():
    backend = InMemoryKeyValueBackend()
    cache = PersistentEmbeddingCache(backend, namespace="t", dimension=DIM)

    assert await cache.check_available()
    await cache.store_many([("a", vec(1.0)), ("b", vec(0.0, 2.0))])

    loaded = await cache.load_all()
    assert set(loaded) == {"a", "b"}
    np.testing.assert_array_equal(loaded["b"], vec(0.0, 2.0))

    only_a = await cache.load_many(["a", "missing"])
    assert set(only_a) == {"a"}


async def test_load_skips_bad_blobs():
    backend = InMemoryKeyValueBackend({"good": encode_vector(vec(1.0)), "bad": b"\x01\x02"})
    cache = PersistentEmbeddingCache(backend, namespace="t", dimension=DIM)

    loaded = await cache.load_all()

    assert set(loaded) == {"good"}


async def test_retain_only_prunes_orphans():
    backend = InMemoryKeyValueBackend({key: encode_vector(vec(1.0)) for key in ("a", "b", "c")})
    cache = PersistentEmbeddingCache(backend, namespace="t", dimension=DIM)

    removed = await cache.retain_only(["a", "c", "never-stored"])

    assert removed == 1
    assert set(backend.data) == {"a", "c"}


async def test_missing_backend_runs_memory_only():
    cache = PersistentEmbeddingCache(None, namespace="t", dimension=DIM)

    assert not await cache.check_available()
    assert not cache.available
    # Everything is a silent no-op
    await cache.store_many([("a", vec(1.0))])
    await cache.delete_many(["a"])
    assert await cache.load_all() == {}
    assert await cache.retain_only(["a"]) == 0


async def test_failing_backend_degrades_once_and_stops_calling():
    backend = BrokenKeyValueBackend()
    cache = PersistentEmbeddingCache(backend, namespace="t", dimension=DIM)

    assert not await cache.check_available()
    attempts = backend.attempts

    await cache.store_many([("a", vec(1.0))])
    assert await cache.load_many(["a"]) == {}

    assert backend.attempts == attempts
    assert not cache.available


async def test_failure_after_startup_check_switches_to_memory_only():
    backend = InMemoryKeyValueBackend()
    cache = PersistentEmbeddingCache(backend, namespace="t", dimension=DIM)
    assert await cache.check_available()

    async def boom(items):
        raise ConnectionError("disk full")

    backend.set_many = boom
    await cache.store_many([("a", vec(1.0))])

    assert not cache.available
