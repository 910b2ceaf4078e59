"""Vector math over fixed-length float32 embeddings."""

from collections.abc import Sequence

import numpy as np

VECTOR_DTYPE = np.float32


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    """Return ``values`` as a 1-D float32 array (no copy when already one)."""
    return np.asarray(values, dtype=VECTOR_DTYPE).reshape(-1)


def dot(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b))


def norm(a: np.ndarray) -> float:
    return float(np.linalg.norm(a))


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two raw vectors; 0.0 when either has zero length."""
    denominator = norm(a) * norm(b)
    if denominator == 0:
        return 0.0
    return dot(a, b) / denominator


def cosine_similarities(
    matrix: np.ndarray,
    target: np.ndarray,
    row_norms: np.ndarray | None = None,
) -> np.ndarray:
    """Cosine similarity of every row of ``matrix`` against ``target``.

    Args:
        matrix: ``(n, D)`` array of raw (non-normalized) vectors
        target: ``(D,)`` query vector
        row_norms: precomputed ``np.linalg.norm(matrix, axis=1)``, if available

    Returns:
        ``(n,)`` float64 array; rows or targets with zero norm score 0.0
    """
    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)

    if row_norms is None:
        row_norms = np.linalg.norm(matrix, axis=1)

    dots = matrix.astype(np.float64) @ target.astype(np.float64)
    denominators = row_norms.astype(np.float64) * norm(target)
    scores = np.zeros_like(dots)
    np.divide(dots, denominators, out=scores, where=denominators != 0)
    return scores


def mean_vector(vectors: Sequence[np.ndarray]) -> np.ndarray:
    """Component-wise mean; the divisor is the number of vectors given."""
    if not vectors:
        raise ValueError("mean_vector needs at least one vector")

    stacked = np.stack([as_vector(v) for v in vectors])
    return (stacked.sum(axis=0) / len(vectors)).astype(VECTOR_DTYPE)
