"""Asynchronously initialized embedding model shared by every request type."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import numpy as np

from marginalia.core.base import ServiceErrorDetails
from marginalia.core.errors import (
    DimensionMismatchError,
    ModelUnavailableError,
    ProcessingError,
)
from marginalia.core.logging import get_logger
from marginalia.domain.models import ModelState
from marginalia.domain.vectors import VECTOR_DTYPE

logger = get_logger(__name__)

# Maps a batch of texts to an (n, D) array-like, in input order
Embedder = Callable[[list[str]], Awaitable[Any]]
# Slow, one-shot loader that yields an Embedder
EmbedderFactory = Callable[[], Awaitable[Embedder]]


class EmbeddingModel:
    """Black-box text embedder with memoized, non-blocking initialization.

    ``start()`` launches initialization once; every caller then awaits the same
    task. A failed initialization resets the model to ``UNINITIALIZED`` so the
    next caller retries, and surfaces ``ModelUnavailableError`` to whoever was
    waiting.
    """

    def __init__(self, factory: EmbedderFactory, dimension: int, name: str = "embedding-model"):
        self._factory = factory
        self.dimension = dimension
        self.name = name
        self._state = ModelState.UNINITIALIZED
        self._ready: asyncio.Task[Embedder] | None = None

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ModelState.READY

    def start(self) -> asyncio.Task[Embedder]:
        """Trigger initialization if it is not already running or done."""
        if self._ready is None:
            self._state = ModelState.INITIALIZING
            self._ready = asyncio.get_running_loop().create_task(
                self._initialize(), name=f"{self.name}-init"
            )
            self._ready.add_done_callback(_consume_exception)
        return self._ready

    async def _initialize(self) -> Embedder:
        logger.info("embedding_model_initializing", model=self.name)
        started = time.perf_counter()
        try:
            embedder = await self._factory()
        except Exception as e:
            self._state = ModelState.UNINITIALIZED
            self._ready = None
            logger.error("embedding_model_init_failed", model=self.name, error=e)
            if isinstance(e, ModelUnavailableError):
                raise
            raise ModelUnavailableError(
                message=f"Embedding model {self.name} failed to initialize: {e!s}",
                details=self._details("initialize"),
            ) from e

        self._state = ModelState.READY
        logger.info(
            "embedding_model_ready",
            model=self.name,
            seconds=round(time.perf_counter() - started, 3),
        )
        return embedder

    async def wait_ready(self) -> Embedder:
        """Await the shared initialization; cancelling a waiter never cancels it."""
        return await asyncio.shield(self.start())

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        """Embed ``texts`` into an ``(len(texts), D)`` float32 array.

        Raises:
            ModelUnavailableError: initialization failed
            ProcessingError: the backend failed or returned the wrong count
            DimensionMismatchError: the backend returned vectors of the wrong width
        """
        if not texts:
            return np.zeros((0, self.dimension), dtype=VECTOR_DTYPE)

        embedder = await self.wait_ready()
        try:
            raw = await embedder(list(texts))
        except Exception as e:
            raise ProcessingError(
                message=f"Embedding backend failed: {e!s}",
                details=self._details("embed", batch_size=len(texts)),
            ) from e

        vectors = np.asarray(raw, dtype=VECTOR_DTYPE)
        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise ProcessingError(
                message=f"Embedding backend returned shape {vectors.shape} for {len(texts)} texts",
                details=self._details("embed", batch_size=len(texts)),
            )
        if vectors.shape[1] != self.dimension:
            raise DimensionMismatchError(
                message=f"Expected {self.dimension}-d embeddings, got {vectors.shape[1]}-d",
                details=self._details("embed", batch_size=len(texts)),
            )
        return vectors

    def _details(self, operation: str, batch_size: int | None = None) -> ServiceErrorDetails:
        return ServiceErrorDetails(
            source="EmbeddingModel",
            operation=operation,
            service_name=self.name,
            embedding_model=self.name,
            batch_size=batch_size,
        )


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Failure is already logged in _initialize; waiters get it re-raised
    if not task.cancelled():
        task.exception()
