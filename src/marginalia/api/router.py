"""Decode inbound request messages, dispatch them, encode replies."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Final, assert_never

from pydantic import ValidationError

from marginalia.core.decorators import with_error_handling
from marginalia.core.logging import get_logger, request_log_context
from marginalia.domain.models import (
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
    Neighbor,
    ProcessNewExcerptsRequest,
    Reply,
    Request,
    SemanticRankRequest,
    SemanticSearchRequest,
    SetDemoEmbeddingsRequest,
    request_adapter,
)
from marginalia.services.query_engine import QueryEngine

logger = get_logger(__name__)


class _NoReply:
    def __repr__(self) -> str:
        return "NO_REPLY"


# Fire-and-forget requests and failed requests produce no outbound message
NO_REPLY: Final = _NoReply()


def _pairs(neighbors: Sequence[Neighbor]) -> list[list[Any]]:
    return [[content_id, score] for content_id, score in neighbors]


def _memberships(excerpts: Sequence[ExcerptRef]) -> list[tuple[str, str | None]]:
    return [(excerpt.id, excerpt.book_id) for excerpt in excerpts]


class RequestRouter:
    """Boundary between the message channel and the QueryEngine."""

    def __init__(self, engine: QueryEngine):
        self.engine = engine

    async def handle(self, message: Mapping[str, Any]) -> dict[str, Any] | None:
        """Handle one inbound message.

        Returns:
            The reply envelope, or ``None`` when nothing should be sent back
        """
        try:
            request = request_adapter.validate_python(message)
        except ValidationError as e:
            method = message.get("method") if isinstance(message, Mapping) else None
            logger.warning("request_rejected", method=method, errors=e.errors(include_url=False))
            return None

        with request_log_context(method=request.method, request_id=request.request_id):
            result = await self.dispatch(request)
            if result is NO_REPLY:
                return None
            return Reply(method=request.method, request_id=request.request_id, result=result).to_wire()

    @with_error_handling(reraise=False, default_factory=lambda: NO_REPLY)
    async def dispatch(self, request: Request) -> Any:
        engine = self.engine

        match request:
            case ProcessNewExcerptsRequest(excerpts=excerpts):
                return await engine.process_new_excerpts(_memberships(excerpts))

            case InitWithClearRequest(excerpts=excerpts):
                return await engine.init_or_clear(_memberships(excerpts), clear_existing=True)

            case ComputeExcerptEmbeddingsRequest(targets=targets):
                return await engine.compute_excerpt_embeddings(targets)

            case ComputeBookEmbeddingsRequest(targets=targets):
                await engine.compute_book_embeddings(targets)
                return None

            case ComputeAuthorEmbeddingsRequest(targets=targets):
                await engine.compute_author_embeddings(targets)
                return None

            case ExcerptNeighborsRequest(target=target, k=k):
                return [target, _pairs(await engine.request_excerpt_neighbors(target, k))]

            case BookNeighborsRequest(target=target, k=k):
                return [target, _pairs(await engine.request_book_neighbors(target, k))]

            case AuthorNeighborsRequest(target=target, k=k):
                return [target, _pairs(await engine.request_author_neighbors(target, k))]

            case SemanticRankRequest(book_id=book_id, excerpt_ids=excerpt_ids):
                return [book_id, _pairs(await engine.semantic_rank(book_id, excerpt_ids))]

            case SemanticSearchRequest(query=query, threshold=threshold):
                return [query, _pairs(await engine.semantic_search(query, threshold))]

            case DeleteExcerptRequest(target_id=target_id, book_id=book_id, book_excerpt_ids=book_excerpt_ids):
                await engine.delete_excerpt(target_id, book_id, book_excerpt_ids)
                return NO_REPLY

            case DeleteBookRequest(book_id=book_id, book_excerpt_ids=book_excerpt_ids):
                await engine.delete_book(book_id, book_excerpt_ids)
                return NO_REPLY

            case SetDemoEmbeddingsRequest(ids=ids):
                return await engine.set_demo_embeddings(ids)

            case _:
                assert_never(request)
