"""Tests for EmbeddingModel lazy initialization and output validation."""

import asyncio

import numpy as np
import pytest

from marginalia.core.errors import (
    DimensionMismatchError,
    ModelUnavailableError,
    ProcessingError,
)
from marginalia.domain.models import ModelState
from marginalia.infrastructure.embeddings.model import EmbeddingModel

from .conftest import DIM, CountingFactory, KeywordEmbedder, keyword_vector


def model_returning(raw):
    async def embedder(texts):
        return raw

    async def factory():
        return embedder

    return EmbeddingModel(factory, dimension=DIM, name="fixed-output")


async def test_embed_returns_float32_rows_in_input_order(model):
    vectors = await model.embed(["a cat", "a dog"])

    assert vectors.shape == (2, DIM)
    assert vectors.dtype == np.float32
    np.testing.assert_array_equal(vectors[0], keyword_vector("a cat"))
    np.testing.assert_array_equal(vectors[1], keyword_vector("a dog"))
    assert model.is_ready


async def test_empty_batch_never_touches_the_model(model, factory):
    vectors = await model.embed([])

    assert vectors.shape == (0, DIM)
    assert factory.calls == 0
    assert model.state is ModelState.UNINITIALIZED


async def test_concurrent_callers_share_one_initialization(model, factory):
    factory.gate = asyncio.Event()

    first = asyncio.create_task(model.embed(["cat"]))
    second = asyncio.create_task(model.embed(["dog"]))
    await asyncio.sleep(0)
    assert model.state is ModelState.INITIALIZING

    factory.gate.set()
    await asyncio.gather(first, second)

    assert factory.calls == 1
    assert model.state is ModelState.READY


async def test_start_is_idempotent(model, factory):
    assert model.start() is model.start()
    await model.wait_ready()
    assert factory.calls == 1


async def test_cancelled_waiter_does_not_cancel_initialization(model, factory):
    factory.gate = asyncio.Event()
    waiter = asyncio.create_task(model.wait_ready())
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    factory.gate.set()
    await model.wait_ready()
    assert model.is_ready
    assert factory.calls == 1


async def test_failed_initialization_is_retried_lazily():
    embedder = KeywordEmbedder()
    factory = CountingFactory(embedder, failures=1)
    model = EmbeddingModel(factory, dimension=DIM)

    with pytest.raises(ModelUnavailableError):
        await model.embed(["cat"])
    assert model.state is ModelState.UNINITIALIZED

    vectors = await model.embed(["cat"])

    assert vectors.shape == (1, DIM)
    assert factory.calls == 2


async def test_backend_failure_becomes_processing_error(model, embedder):
    embedder.fail_next = True

    with pytest.raises(ProcessingError):
        await model.embed(["cat"])

    # The model itself stays usable
    assert (await model.embed(["cat"])).shape == (1, DIM)


async def test_wrong_row_count_is_rejected():
    model = model_returning(np.zeros((1, DIM)))

    with pytest.raises(ProcessingError):
        await model.embed(["one", "two"])


async def test_wrong_width_is_rejected():
    model = model_returning(np.zeros((1, DIM + 1)))

    with pytest.raises(DimensionMismatchError):
        await model.embed(["one"])
