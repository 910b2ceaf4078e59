"""Precomputed embeddings for the read-only demo corpus.

The demo blob is the raw concatenation of little-endian float32 vectors, one
per demo excerpt, in the same order as the excerpt id list.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import anyio
import numpy as np

from marginalia.core.errors import MalformedDemoDataError
from marginalia.core.logging import get_logger

if TYPE_CHECKING:
    from marginalia.infrastructure.embeddings.model import EmbeddingModel

logger = get_logger(__name__)

DEMO_BATCH_SIZE = 20
_BLOB_DTYPE = np.dtype("<f4")


async def read_demo_blob(path: Path | str) -> bytes:
    """Read the demo blob without blocking the event loop.

    Raises:
        MalformedDemoDataError: the file is missing or unreadable
    """
    try:
        return await anyio.Path(path).read_bytes()
    except OSError as e:
        raise MalformedDemoDataError(
            message=f"Could not read demo embeddings from {path}: {e!s}",
            details={"source": "demo", "operation": "read_demo_blob"},
        ) from e


def decode_demo_blob(blob: bytes, count: int, dimension: int) -> np.ndarray:
    """Split ``blob`` into a ``(count, dimension)`` float32 matrix.

    Raises:
        MalformedDemoDataError: the blob size is not ``count * dimension * 4``
    """
    expected = count * dimension * _BLOB_DTYPE.itemsize
    if len(blob) != expected:
        raise MalformedDemoDataError(
            message=f"Demo blob has {len(blob)} bytes, expected {expected} for {count} vectors",
            details={"source": "demo", "operation": "decode_demo_blob"},
        )
    return np.frombuffer(blob, dtype=_BLOB_DTYPE).reshape(count, dimension).astype(np.float32)


async def write_demo_embeddings(
    model: EmbeddingModel,
    texts: Sequence[str],
    output: Path,
    batch_size: int = DEMO_BATCH_SIZE,
) -> int:
    """Embed ``texts`` in batches and write the blob to ``output``.

    Returns:
        Number of vectors written
    """
    written = 0
    async with await anyio.open_file(output, "wb") as out:
        for start in range(0, len(texts), batch_size):
            end = min(start + batch_size, len(texts))
            logger.info("demo_batch_embedding", start=start, end=end)
            vectors = await model.embed(texts[start:end])
            await out.write(vectors.astype(_BLOB_DTYPE).tobytes())
            written += len(vectors)

    logger.info("demo_embeddings_written", total=written, path=str(output))
    return written
