"""Embedding store, neighbor indexes and the query engine built on them."""

from .embedding_store import EmbeddingStore, MembershipIndex, VectorCollection
from .neighbor_index import IndexSnapshot, NeighborIndex
from .query_engine import QueryEngine

__all__ = [
    "EmbeddingStore",
    "IndexSnapshot",
    "MembershipIndex",
    "NeighborIndex",
    "QueryEngine",
    "VectorCollection",
]
