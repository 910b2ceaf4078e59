"""Wire messages exchanged with the host application.

Every inbound message is a JSON object tagged by ``method``; pydantic routes it
to the matching request model. Field names are camelCase on the wire.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .embedding import ContentId


class WireModel(BaseModel):
    """camelCase aliases; numeric ids are accepted and normalized to strings."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        frozen=True,
    )


class ExcerptRef(WireModel):
    id: ContentId
    book_id: ContentId | None = None


class RequestBase(WireModel):
    request_id: str | None = None


class ProcessNewExcerptsRequest(RequestBase):
    method: Literal["processNewExcerpts"]
    excerpts: list[ExcerptRef] = Field(default_factory=list)


class InitWithClearRequest(RequestBase):
    method: Literal["initWithClear"]
    excerpts: list[ExcerptRef] = Field(default_factory=list)


class ComputeExcerptEmbeddingsRequest(RequestBase):
    method: Literal["computeExcerptEmbeddings"]
    targets: list[tuple[ContentId, str]]


class ComputeBookEmbeddingsRequest(RequestBase):
    method: Literal["computeBookEmbeddings"]
    targets: list[tuple[ContentId, list[ContentId]]]


class ComputeAuthorEmbeddingsRequest(RequestBase):
    method: Literal["computeAuthorEmbeddings"]
    targets: list[tuple[ContentId, list[ContentId]]]


class ExcerptNeighborsRequest(RequestBase):
    method: Literal["requestExcerptNeighbors"]
    target: ContentId
    k: int | None = Field(default=None, ge=0)


class BookNeighborsRequest(RequestBase):
    method: Literal["requestBookNeighbors"]
    target: ContentId
    k: int | None = Field(default=None, ge=0)


class AuthorNeighborsRequest(RequestBase):
    method: Literal["requestAuthorNeighbors"]
    target: ContentId
    k: int | None = Field(default=None, ge=0)


class SemanticRankRequest(RequestBase):
    method: Literal["requestSemanticRank"]
    book_id: ContentId
    excerpt_ids: list[ContentId] = Field(default_factory=list)


class SemanticSearchRequest(RequestBase):
    method: Literal["semanticSearch"]
    query: str
    threshold: float | None = None


class DeleteExcerptRequest(RequestBase):
    method: Literal["deleteExcerpt"]
    target_id: ContentId
    book_id: ContentId | None = None
    book_excerpt_ids: list[ContentId] = Field(default_factory=list)


class DeleteBookRequest(RequestBase):
    method: Literal["deleteBook"]
    book_id: ContentId
    book_excerpt_ids: list[ContentId] = Field(default_factory=list)


class SetDemoEmbeddingsRequest(RequestBase):
    method: Literal["setDemoEmbeddings"]
    ids: list[ContentId]


Request = Annotated[
    ProcessNewExcerptsRequest
    | InitWithClearRequest
    | ComputeExcerptEmbeddingsRequest
    | ComputeBookEmbeddingsRequest
    | ComputeAuthorEmbeddingsRequest
    | ExcerptNeighborsRequest
    | BookNeighborsRequest
    | AuthorNeighborsRequest
    | SemanticRankRequest
    | SemanticSearchRequest
    | DeleteExcerptRequest
    | DeleteBookRequest
    | SetDemoEmbeddingsRequest,
    Field(discriminator="method"),
]

request_adapter: TypeAdapter[Request] = TypeAdapter(Request)


class Reply(WireModel):
    """Outbound envelope; ``result`` carries the method-specific payload."""

    method: str
    request_id: str | None = None
    result: Any = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
