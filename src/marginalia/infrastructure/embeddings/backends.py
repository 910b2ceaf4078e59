"""Embedding backends and backend selection.

Two backends are available:
- local sentence-transformers, preferring an accelerator and falling back to CPU
- the Voyage AI API

Both are exposed as ``EmbedderFactory`` callables so the rest of the worker
never knows which one it got.
"""

from __future__ import annotations

from functools import partial

import anyio.to_thread
import voyageai

from marginalia.core.base import ServiceErrorDetails
from marginalia.core.config import Settings, settings
from marginalia.core.errors import ModelUnavailableError
from marginalia.core.logging import get_logger
from marginalia.infrastructure.embeddings.model import Embedder, EmbedderFactory, EmbeddingModel

logger = get_logger(__name__)


def candidate_devices(prefer_accelerator: bool = True) -> list[str]:
    """Devices to try in order; CPU is always last."""
    devices: list[str] = []
    if prefer_accelerator:
        import torch

        if torch.cuda.is_available():
            devices.append("cuda")
        elif torch.backends.mps.is_available():
            devices.append("mps")
    devices.append("cpu")
    return devices


def sentence_transformer_factory(model_name: str, prefer_accelerator: bool = True) -> EmbedderFactory:
    """Load ``model_name`` off the event loop, on the best device that works."""

    async def load() -> Embedder:
        from sentence_transformers import SentenceTransformer

        last_error: Exception | None = None
        for device in candidate_devices(prefer_accelerator):
            try:
                model = await anyio.to_thread.run_sync(partial(SentenceTransformer, model_name, device=device))
            except Exception as e:  # noqa: BLE001 - an accelerator failure falls through to the next device
                logger.warning("embedding_device_unavailable", device=device, model=model_name, error=str(e))
                last_error = e
                continue

            logger.info("embedding_device_selected", device=device, model=model_name)

            async def embed(texts: list[str]):
                return await anyio.to_thread.run_sync(
                    partial(model.encode, texts, convert_to_numpy=True, show_progress_bar=False)
                )

            return embed

        raise ModelUnavailableError(
            message=f"No device could load {model_name}",
            details=ServiceErrorDetails(
                source="sentence_transformer_factory",
                operation="load",
                service_name="sentence-transformers",
                embedding_model=model_name,
            ),
        ) from last_error

    return load


def voyage_factory(api_key: str, model: str) -> EmbedderFactory:
    """Remote embeddings through ``voyageai.AsyncClient`` with retries disabled."""

    async def load() -> Embedder:
        if not api_key:
            raise ModelUnavailableError(
                message="Voyage API key not configured",
                details=ServiceErrorDetails(
                    source="voyage_factory",
                    operation="load",
                    service_name="voyage",
                    embedding_model=model,
                ),
            )

        client = voyageai.AsyncClient(api_key=api_key, max_retries=0)

        async def embed(texts: list[str]):
            response = await client.embed(texts=texts, model=model)
            return getattr(response, "embeddings", [])

        return embed

    return load


def create_embedding_model(config: Settings | None = None) -> EmbeddingModel:
    """Build the EmbeddingModel selected by configuration (not yet started)."""
    config = config or settings

    if config.embedding_backend == "voyage":
        factory = voyage_factory(config.voyage_api_key, config.voyage_model)
        name = config.voyage_model
    else:
        factory = sentence_transformer_factory(config.embedding_model_name, config.prefer_accelerator)
        name = config.embedding_model_name

    logger.info("embedding_backend_configured", backend=config.embedding_backend, model=name)
    return EmbeddingModel(factory, dimension=config.embedding_dim, name=name)
