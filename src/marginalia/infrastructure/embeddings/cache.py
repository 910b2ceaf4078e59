"""Durable embedding cache over an external key-value layer.

The key-value layer belongs to the host and may be missing entirely. When it
is missing, or any call to it fails, the cache switches to memory-only mode for
the rest of the process and says so once in the log.
"""

from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

import numpy as np

from marginalia.core.base import StorageErrorDetails
from marginalia.core.errors import PersistenceUnavailableError
from marginalia.core.logging import get_logger
from marginalia.domain.models import ContentId

logger = get_logger(__name__)

# Little-endian float32, matching the demo blob format
_WIRE_DTYPE = np.dtype("<f4")


@runtime_checkable
class KeyValueBackend(Protocol):
    """Asynchronous byte-blob store for one embedding namespace."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...

    async def get_many(self, keys: Sequence[str]) -> list[bytes | None]: ...

    async def set_many(self, items: Sequence[tuple[str, bytes]]) -> None: ...

    async def delete_many(self, keys: Sequence[str]) -> None: ...


def encode_vector(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=_WIRE_DTYPE).tobytes()


def decode_vector(blob: bytes, dimension: int) -> np.ndarray | None:
    """Decode a stored blob, or ``None`` when it is not exactly ``dimension`` floats."""
    if len(blob) != dimension * _WIRE_DTYPE.itemsize:
        return None
    return np.frombuffer(blob, dtype=_WIRE_DTYPE).astype(np.float32)


class PersistentEmbeddingCache:
    """Content id -> vector mapping persisted through a KeyValueBackend."""

    def __init__(self, backend: KeyValueBackend | None, namespace: str, dimension: int):
        self.backend = backend
        self.namespace = namespace
        self.dimension = dimension
        self._available = backend is not None
        self._checked = False
        self._degraded = False

    @property
    def available(self) -> bool:
        return self._available

    async def check_available(self) -> bool:
        """Capability check run once at startup; later calls return the cached answer."""
        if self._checked:
            return self._available
        self._checked = True

        if self.backend is None:
            self._degrade(
                PersistenceUnavailableError(
                    message="No durable key-value layer configured",
                    details=self._details("check_available"),
                )
            )
            return False

        try:
            await self.backend.keys()
        except Exception as e:
            self._degrade(e)
            return False

        logger.info("persistent_cache_available", namespace=self.namespace)
        return True

    def _degrade(self, error: Exception) -> None:
        self._available = False
        if self._degraded:
            return
        self._degraded = True
        logger.warning(
            "persistent_cache_unavailable",
            namespace=self.namespace,
            error=str(error),
            mode="memory-only",
        )

    async def load_all(self) -> dict[ContentId, np.ndarray]:
        """Read every stored vector; undecodable blobs are skipped."""
        if not self._available:
            return {}
        try:
            keys = await self.backend.keys()
        except Exception as e:
            self._degrade(e)
            return {}
        return await self.load_many(keys)

    async def load_many(self, ids: Iterable[ContentId]) -> dict[ContentId, np.ndarray]:
        ids = list(ids)
        if not self._available or not ids:
            return {}
        try:
            blobs = await self.backend.get_many(ids)
        except Exception as e:
            self._degrade(e)
            return {}

        vectors: dict[ContentId, np.ndarray] = {}
        skipped = 0
        for content_id, blob in zip(ids, blobs, strict=True):
            if blob is None:
                continue
            vector = decode_vector(blob, self.dimension)
            if vector is None:
                skipped += 1
                continue
            vectors[content_id] = vector

        if skipped:
            logger.warning("persistent_cache_bad_blobs", namespace=self.namespace, skipped=skipped)
        return vectors

    async def store_many(self, items: Sequence[tuple[ContentId, np.ndarray]]) -> None:
        if not self._available or not items:
            return
        try:
            await self.backend.set_many([(content_id, encode_vector(v)) for content_id, v in items])
        except Exception as e:
            self._degrade(e)
            return
        logger.debug("persistent_cache_stored", namespace=self.namespace, count=len(items))

    async def delete_many(self, ids: Sequence[ContentId]) -> None:
        if not self._available or not ids:
            return
        try:
            await self.backend.delete_many(list(ids))
        except Exception as e:
            self._degrade(e)
            return
        logger.debug("persistent_cache_deleted", namespace=self.namespace, count=len(ids))

    async def retain_only(self, ids: Iterable[ContentId]) -> int:
        """Delete every stored key not in ``ids``; returns how many were removed."""
        if not self._available:
            return 0
        keep = set(ids)
        try:
            orphans = [key for key in await self.backend.keys() if key not in keep]
            if orphans:
                await self.backend.delete_many(orphans)
        except Exception as e:
            self._degrade(e)
            return 0
        if orphans:
            logger.info("persistent_cache_pruned", namespace=self.namespace, removed=len(orphans))
        return len(orphans)

    def _details(self, operation: str, key_count: int | None = None) -> StorageErrorDetails:
        return StorageErrorDetails(
            source="PersistentEmbeddingCache",
            operation=operation,
            namespace=self.namespace,
            key_count=key_count,
        )
