"""Domain models for the embedding worker."""

from .embedding import Collection, ContentId, HydrationState, ModelState, Neighbor
from .messages import (
    AuthorNeighborsRequest,
    BookNeighborsRequest,
    ComputeAuthorEmbeddingsRequest,
    ComputeBookEmbeddingsRequest,
    ComputeExcerptEmbeddingsRequest,
    DeleteBookRequest,
    DeleteExcerptRequest,
    ExcerptNeighborsRequest,
    ExcerptRef,
    InitWithClearRequest,
    ProcessNewExcerptsRequest,
    Reply,
    Request,
    SemanticRankRequest,
    SemanticSearchRequest,
    SetDemoEmbeddingsRequest,
    request_adapter,
)

__all__ = [
    "AuthorNeighborsRequest",
    "BookNeighborsRequest",
    # Embedding
    "Collection",
    "ComputeAuthorEmbeddingsRequest",
    "ComputeBookEmbeddingsRequest",
    "ComputeExcerptEmbeddingsRequest",
    "ContentId",
    "DeleteBookRequest",
    "DeleteExcerptRequest",
    "ExcerptNeighborsRequest",
    "ExcerptRef",
    "HydrationState",
    "InitWithClearRequest",
    "ModelState",
    "Neighbor",
    # Messages
    "ProcessNewExcerptsRequest",
    "Reply",
    "Request",
    "SemanticRankRequest",
    "SemanticSearchRequest",
    "SetDemoEmbeddingsRequest",
    "request_adapter",
]
