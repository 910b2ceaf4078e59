"""Brute-force top-K cosine search over a snapshot of one collection."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from marginalia.core.errors import DimensionMismatchError
from marginalia.core.logging import get_logger
from marginalia.domain.models import ContentId, Neighbor
from marginalia.domain.vectors import VECTOR_DTYPE, as_vector, cosine_similarities
from marginalia.services.embedding_store import VectorCollection

logger = get_logger(__name__)

ExcludePredicate = Callable[[ContentId], bool]


@dataclass(frozen=True)
class IndexSnapshot:
    """Row ``i`` of ``matrix`` is the vector of ``ids[i]``."""

    ids: tuple[ContentId, ...]
    matrix: np.ndarray
    norms: np.ndarray
    version: int

    def __len__(self) -> int:
        return len(self.ids)


class NeighborIndex:
    """Materialized ``(ids, matrix)`` view of a VectorCollection.

    Searches never read the live collection. A snapshot is rebuilt in full
    whenever the collection's version moved past it, and the new snapshot
    replaces the old one in a single assignment.
    """

    def __init__(self, collection: VectorCollection):
        self.collection = collection
        self._snapshot: IndexSnapshot | None = None

    @property
    def snapshot(self) -> IndexSnapshot | None:
        return self._snapshot

    def rebuild(self) -> IndexSnapshot:
        items = self.collection.items()
        if items:
            matrix = np.stack([vector for _, vector in items]).astype(VECTOR_DTYPE, copy=False)
        else:
            matrix = np.zeros((0, self.collection.dimension), dtype=VECTOR_DTYPE)

        snapshot = IndexSnapshot(
            ids=tuple(content_id for content_id, _ in items),
            matrix=matrix,
            norms=np.linalg.norm(matrix, axis=1),
            version=self.collection.version,
        )
        self._snapshot = snapshot
        logger.debug(
            "neighbor_index_rebuilt",
            collection=self.collection.kind.value,
            rows=len(snapshot),
            version=snapshot.version,
        )
        return snapshot

    def ensure_current(self) -> IndexSnapshot:
        snapshot = self._snapshot
        if snapshot is None or snapshot.version != self.collection.version:
            snapshot = self.rebuild()
        return snapshot

    def invalidate(self) -> None:
        self._snapshot = None

    def _ranked(self, target: np.ndarray) -> tuple[IndexSnapshot, np.ndarray, np.ndarray]:
        snapshot = self.ensure_current()
        target = as_vector(target)
        if target.shape[0] != self.collection.dimension:
            raise DimensionMismatchError(
                message=f"Query vector has {target.shape[0]} components, expected {self.collection.dimension}",
                details={"source": "NeighborIndex", "operation": "search"},
            )
        scores = cosine_similarities(snapshot.matrix, target, snapshot.norms)
        # Stable sort on negated scores: descending, ties keep row order
        order = np.argsort(-scores, kind="stable")
        return snapshot, scores, order

    def top_k(
        self,
        target: np.ndarray,
        k: int,
        exclude: ExcludePredicate | None = None,
        drop_self: ContentId | None = None,
    ) -> list[Neighbor]:
        """The ``k`` most similar ids, skipping excluded ones.

        Excluded candidates are replaced by the next best, so fewer than ``k``
        results come back only when the index runs out of eligible rows.
        """
        if k <= 0:
            return []
        snapshot, scores, order = self._ranked(target)

        neighbors: list[Neighbor] = []
        for row in order:
            content_id = snapshot.ids[row]
            if content_id == drop_self or (exclude is not None and exclude(content_id)):
                continue
            neighbors.append((content_id, float(scores[row])))
            if len(neighbors) == k:
                break
        return neighbors

    def scores_above(self, target: np.ndarray, threshold: float, limit: int) -> list[Neighbor]:
        """Every id scoring at least ``threshold``, best first, at most ``limit`` of them."""
        if limit <= 0:
            return []
        snapshot, scores, order = self._ranked(target)
        return [
            (snapshot.ids[row], float(scores[row]))
            for row in order[:limit]
            if scores[row] >= threshold
        ]
