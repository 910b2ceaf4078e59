"""Public operations of the embedding worker.

Every operation here returns a (possibly empty) result instead of raising:
unexpected failures are logged by ``with_error_handling`` and turned into the
empty value for that operation.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Sequence

from marginalia.core.base import ApplicationError, ErrorLevel
from marginalia.core.config import Settings, settings
from marginalia.core.decorators import with_error_handling
from marginalia.core.errors import EmbeddingNotFoundError, MalformedDemoDataError
from marginalia.core.logging import get_logger
from marginalia.demo import read_demo_blob
from marginalia.domain.models import Collection, ContentId, Neighbor
from marginalia.domain.vectors import cosine_similarity
from marginalia.infrastructure.embeddings.cache import KeyValueBackend, PersistentEmbeddingCache
from marginalia.infrastructure.embeddings.model import EmbeddingModel
from marginalia.services.embedding_store import EmbeddingStore, unique
from marginalia.services.neighbor_index import NeighborIndex

logger = get_logger(__name__)

ExcerptMembership = tuple[ContentId, ContentId | None]
DemoBlobSource = Callable[[], Awaitable[bytes]]


class QueryEngine:
    """Orchestrates the model, the store and the per-collection neighbor indexes."""

    def __init__(
        self,
        store: EmbeddingStore,
        config: Settings | None = None,
        demo_source: DemoBlobSource | None = None,
    ):
        self.store = store
        self.model = store.model
        self.config = config or settings
        self.indexes = {kind: NeighborIndex(store.collection(kind)) for kind in Collection}
        self._demo_source = demo_source or (lambda: read_demo_blob(self.config.demo_embeddings_path))

    @classmethod
    def create(
        cls,
        model: EmbeddingModel,
        backend: KeyValueBackend | None = None,
        config: Settings | None = None,
        demo_source: DemoBlobSource | None = None,
    ) -> QueryEngine:
        """Wire a store and cache around ``model``; ``backend=None`` means memory-only."""
        config = config or settings
        cache = PersistentEmbeddingCache(backend, namespace=config.storage_namespace, dimension=config.embedding_dim)
        store = EmbeddingStore(model, cache, dimension=config.embedding_dim)
        return cls(store, config=config, demo_source=demo_source)

    def start(self) -> None:
        """Kick off model initialization without waiting for it."""
        self.model.start()

    async def close(self) -> None:
        await self.store.drain()

    # Registration and reset

    @with_error_handling(reraise=False, default_factory=list)
    async def process_new_excerpts(self, excerpts: Iterable[ExcerptMembership]) -> list[ContentId]:
        """Register excerpt ownership; reply with every id currently embedded."""
        return await self.init_or_clear(excerpts, clear_existing=False)

    @with_error_handling(reraise=False, default_factory=list)
    async def init_or_clear(self, excerpts: Iterable[ExcerptMembership], clear_existing: bool) -> list[ContentId]:
        """Register ``excerpts``, optionally after wiping all in-memory state.

        With ``clear_existing`` the given excerpts become the authoritative set:
        only their vectors are reloaded, and durable entries for any other id
        are scheduled for deletion.
        """
        excerpts = list(excerpts)

        if clear_existing:
            authoritative = unique(excerpt_id for excerpt_id, _ in excerpts)
            self.store.clear()
            for index in self.indexes.values():
                index.invalidate()
            self.store.membership.register(excerpts)
            await self.store.rehydrate(authoritative)
            self.store.prune_durable(authoritative)
        else:
            await self.store.ensure_hydrated()
            self.store.membership.register(excerpts)

        return self.store.excerpts.ids()

    # Embedding computation

    @with_error_handling(reraise=False, default_factory=list)
    async def compute_excerpt_embeddings(self, targets: Sequence[tuple[ContentId, str]]) -> list[ContentId]:
        return await self.store.compute_excerpt_embeddings(targets)

    @with_error_handling(reraise=False)
    async def compute_book_embeddings(self, targets: Sequence[tuple[ContentId, Sequence[ContentId]]]) -> None:
        self.store.compute_collection_embeddings(Collection.BOOK, targets)

    @with_error_handling(reraise=False)
    async def compute_author_embeddings(self, targets: Sequence[tuple[ContentId, Sequence[ContentId]]]) -> None:
        self.store.compute_collection_embeddings(Collection.AUTHOR, targets)

    # Neighbor queries

    def _k(self, k: int | None) -> int:
        return self.config.neighbors_k if k is None else k

    def _neighbors(
        self,
        kind: Collection,
        target: ContentId,
        k: int | None,
        exclude: Callable[[ContentId], bool] | None = None,
    ) -> list[Neighbor]:
        vector = self.store.collection(kind).get(target)
        if vector is None:
            raise EmbeddingNotFoundError(
                message=f"No {kind.value} embedding for {target}",
                details={"source": "QueryEngine", "operation": "neighbors"},
            )
        return self.indexes[kind].top_k(vector, self._k(k), exclude=exclude, drop_self=target)

    @with_error_handling(reraise=False, default_factory=list)
    async def request_excerpt_neighbors(self, target: ContentId, k: int | None = None) -> list[Neighbor]:
        """Nearest excerpts, never from the same book as ``target``."""
        membership = self.store.membership
        book_id = membership.book_of(target)
        exclude = None if book_id is None else (lambda candidate: membership.book_of(candidate) == book_id)
        return self._neighbors(Collection.EXCERPT, target, k, exclude)

    @with_error_handling(reraise=False, default_factory=list)
    async def request_book_neighbors(self, target: ContentId, k: int | None = None) -> list[Neighbor]:
        return self._neighbors(Collection.BOOK, target, k)

    @with_error_handling(reraise=False, default_factory=list)
    async def request_author_neighbors(self, target: ContentId, k: int | None = None) -> list[Neighbor]:
        return self._neighbors(Collection.AUTHOR, target, k, exclude=lambda candidate: candidate == target)

    # Semantic queries

    @with_error_handling(reraise=False, default_factory=list)
    async def semantic_search(self, query: str, threshold: float | None = None) -> list[Neighbor]:
        """Excerpts scoring at least ``threshold`` against ``query``, best first.

        Without a threshold the configured ``semantic_search_threshold`` applies.
        """
        if threshold is None:
            threshold = self.config.semantic_search_threshold
        try:
            vectors = await self.model.embed([query])
        except ApplicationError as e:
            logger.warning("semantic_search_unavailable", error=e.message, error_code=e.code.value)
            return []
        return self.indexes[Collection.EXCERPT].scores_above(
            vectors[0], threshold, self.config.semantic_search_limit
        )

    @with_error_handling(reraise=False, default_factory=list)
    async def semantic_rank(self, book_id: ContentId, excerpt_ids: Sequence[ContentId]) -> list[Neighbor]:
        """Order a book's excerpts by similarity to the book's own mean vector."""
        if not excerpt_ids:
            return []
        centroid = self.store.books.get(book_id)
        if centroid is None:
            raise EmbeddingNotFoundError(
                message=f"No book embedding for {book_id}",
                details={"source": "QueryEngine", "operation": "semantic_rank"},
            )

        scored = [
            (excerpt_id, cosine_similarity(vector, centroid))
            for excerpt_id in unique(excerpt_ids)
            if (vector := self.store.excerpts.get(excerpt_id)) is not None
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored

    # Deletion

    @with_error_handling(reraise=False)
    async def delete_excerpt(
        self,
        target_id: ContentId,
        book_id: ContentId | None = None,
        book_excerpt_ids: Sequence[ContentId] = (),
    ) -> None:
        """Delete one excerpt, then re-average its book from the remaining members."""
        self.store.delete_excerpt(target_id)
        if book_id is not None:
            remaining = [excerpt_id for excerpt_id in book_excerpt_ids if excerpt_id != target_id]
            self.store.compute_collection_embeddings(Collection.BOOK, [(book_id, remaining)])

    @with_error_handling(reraise=False)
    async def delete_book(self, book_id: ContentId, book_excerpt_ids: Sequence[ContentId]) -> None:
        self.store.delete_collection_cascade(Collection.BOOK, book_id, book_excerpt_ids)

    # Demo corpus

    @with_error_handling(reraise=False, default_factory=list, error_level=ErrorLevel.WARNING)
    async def bootstrap_demo_embeddings(self, ids: Sequence[ContentId], blob: bytes) -> list[ContentId]:
        try:
            return self.store.load_precomputed(ids, blob)
        except MalformedDemoDataError as e:
            logger.warning("demo_embeddings_rejected", error=e.message)
            return []

    @with_error_handling(reraise=False, default_factory=list, error_level=ErrorLevel.WARNING)
    async def set_demo_embeddings(self, ids: Sequence[ContentId]) -> list[ContentId]:
        """Fetch the demo blob and seed the excerpt map from it."""
        try:
            blob = await self._demo_source()
        except MalformedDemoDataError as e:
            logger.warning("demo_embeddings_unavailable", error=e.message)
            return []
        return await self.bootstrap_demo_embeddings(ids, blob)
