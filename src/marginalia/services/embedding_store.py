"""In-memory embedding collections backed by the durable cache.

The store owns three independent collections (excerpts, books, authors) plus
the excerpt -> book membership index. Only excerpt vectors come from the
model; book and author vectors are means of excerpt vectors and are recomputed
only when asked.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Iterable, Iterator, Sequence
from typing import Any

import numpy as np

from marginalia.core.base import ApplicationError
from marginalia.core.errors import DimensionMismatchError
from marginalia.core.logging import get_logger
from marginalia.demo import decode_demo_blob
from marginalia.domain.models import Collection, ContentId, HydrationState
from marginalia.domain.vectors import VECTOR_DTYPE, mean_vector
from marginalia.infrastructure.embeddings.cache import PersistentEmbeddingCache
from marginalia.infrastructure.embeddings.model import EmbeddingModel

logger = get_logger(__name__)


def unique(ids: Iterable[ContentId]) -> list[ContentId]:
    """De-duplicate while keeping first-seen order."""
    return list(dict.fromkeys(ids))


class VectorCollection:
    """Content id -> vector map with a version bumped on every change.

    Neighbor indexes compare this version with their snapshot's to know when
    they are stale.
    """

    def __init__(self, kind: Collection, dimension: int):
        self.kind = kind
        self.dimension = dimension
        self.version = 0
        self._vectors: dict[ContentId, np.ndarray] = {}

    def __contains__(self, content_id: object) -> bool:
        return content_id in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    def __iter__(self) -> Iterator[ContentId]:
        return iter(self._vectors)

    def get(self, content_id: ContentId) -> np.ndarray | None:
        return self._vectors.get(content_id)

    def ids(self) -> list[ContentId]:
        return list(self._vectors)

    def items(self) -> list[tuple[ContentId, np.ndarray]]:
        return list(self._vectors.items())

    def put(self, content_id: ContentId, vector: np.ndarray) -> None:
        self.put_many([(content_id, vector)])

    def put_many(self, items: Iterable[tuple[ContentId, np.ndarray]]) -> int:
        staged = []
        for content_id, vector in items:
            array = np.array(vector, dtype=VECTOR_DTYPE).reshape(-1)
            if array.shape[0] != self.dimension:
                raise DimensionMismatchError(
                    message=f"{self.kind.value} {content_id} has {array.shape[0]} components, expected {self.dimension}",
                    details={"source": "VectorCollection", "operation": "put"},
                )
            staged.append((content_id, array))

        # Validate everything before touching the map
        for content_id, array in staged:
            self._vectors[content_id] = array
        if staged:
            self.version += 1
        return len(staged)

    def remove(self, content_id: ContentId) -> bool:
        return bool(self.remove_many([content_id]))

    def remove_many(self, ids: Iterable[ContentId]) -> list[ContentId]:
        removed = [content_id for content_id in ids if self._vectors.pop(content_id, None) is not None]
        if removed:
            self.version += 1
        return removed

    def clear(self) -> None:
        self._vectors.clear()
        self.version += 1


class MembershipIndex:
    """Excerpt -> book ownership, used to exclude same-book neighbors."""

    def __init__(self) -> None:
        self._book_of: dict[ContentId, ContentId] = {}

    def __len__(self) -> int:
        return len(self._book_of)

    def register(self, pairs: Iterable[tuple[ContentId, ContentId | None]]) -> None:
        for excerpt_id, book_id in pairs:
            if book_id is not None:
                self._book_of[excerpt_id] = book_id

    def book_of(self, excerpt_id: ContentId) -> ContentId | None:
        return self._book_of.get(excerpt_id)

    def forget(self, excerpt_ids: Iterable[ContentId]) -> None:
        for excerpt_id in excerpt_ids:
            self._book_of.pop(excerpt_id, None)

    def clear(self) -> None:
        self._book_of.clear()


class EmbeddingStore:
    """Owns every embedding map and keeps the durable cache in step with it."""

    def __init__(self, model: EmbeddingModel, cache: PersistentEmbeddingCache, dimension: int):
        self.model = model
        self.cache = cache
        self.dimension = dimension
        self.excerpts = VectorCollection(Collection.EXCERPT, dimension)
        self.books = VectorCollection(Collection.BOOK, dimension)
        self.authors = VectorCollection(Collection.AUTHOR, dimension)
        self.membership = MembershipIndex()

        self._hydration: asyncio.Task[None] | None = None
        self._hydration_state = HydrationState.EMPTY
        # One future per excerpt id currently being embedded; resolves to True on commit
        self._pending: dict[ContentId, asyncio.Future[bool]] = {}
        # Ids deleted while their embedding was in flight
        self._tombstones: set[ContentId] = set()
        # Ids deleted while the durable cache was being loaded
        self._deleted_while_hydrating: set[ContentId] = set()
        # Bumped by clear() so in-flight work from before the clear is discarded
        self._generation = 0
        self._background: set[asyncio.Task[Any]] = set()
        # Durable writes and deletes run one at a time, in the order they were issued
        self._durable_lock = asyncio.Lock()

    def collection(self, kind: Collection) -> VectorCollection:
        return {
            Collection.EXCERPT: self.excerpts,
            Collection.BOOK: self.books,
            Collection.AUTHOR: self.authors,
        }[kind]

    @property
    def hydration_state(self) -> HydrationState:
        return self._hydration_state

    def in_flight(self) -> set[ContentId]:
        return set(self._pending)

    # Hydration

    async def ensure_hydrated(self) -> None:
        """Load the durable cache into memory once; concurrent callers share the load."""
        if self._hydration is None:
            self._start_hydration(None)
        await asyncio.shield(self._hydration)

    async def rehydrate(self, ids: Sequence[ContentId]) -> None:
        """Hydrate only ``ids`` (used after a clear with an authoritative id set)."""
        self._start_hydration(list(ids))
        await asyncio.shield(self._hydration)

    def _start_hydration(self, ids: list[ContentId] | None) -> None:
        self._hydration_state = HydrationState.HYDRATING
        self._hydration = asyncio.get_running_loop().create_task(
            self._hydrate(ids, self._generation), name="hydrate-excerpt-embeddings"
        )

    async def _hydrate(self, ids: list[ContentId] | None, generation: int) -> None:
        await self.cache.check_available()
        stored = await (self.cache.load_all() if ids is None else self.cache.load_many(ids))

        if generation != self._generation:
            logger.info("excerpt_hydration_discarded", reason="store cleared")
            return

        deleted = self._deleted_while_hydrating
        loaded = self.excerpts.put_many(
            (content_id, vector)
            for content_id, vector in stored.items()
            if content_id not in self.excerpts and content_id not in deleted
        )
        deleted.clear()
        self._hydration_state = HydrationState.POPULATED
        logger.info(
            "excerpt_embeddings_hydrated",
            loaded=loaded,
            total=len(self.excerpts),
            durable=self.cache.available,
        )

    # Excerpts

    async def compute_excerpt_embeddings(self, targets: Sequence[tuple[ContentId, str]]) -> list[ContentId]:
        """Make sure every target id is embedded, calling the model at most once.

        Ids already embedded are returned as-is. Ids another call is already
        embedding are awaited instead of re-submitted. The rest go to the model
        in a single batch.

        Returns:
            De-duplicated ids that are embedded once this call finishes
        """
        await self.ensure_hydrated()

        ready: list[ContentId] = []
        waiting: dict[ContentId, asyncio.Future[bool]] = {}
        needed: dict[ContentId, str] = {}
        for content_id, text in targets:
            if content_id in self.excerpts:
                ready.append(content_id)
            elif content_id in self._pending:
                waiting[content_id] = self._pending[content_id]
            elif content_id not in needed:
                needed[content_id] = text

        computed = await self._embed_and_commit(needed) if needed else []

        coalesced: list[ContentId] = []
        if waiting:
            outcomes = await asyncio.gather(*(asyncio.shield(future) for future in waiting.values()))
            coalesced = [content_id for content_id, ok in zip(waiting, outcomes, strict=True) if ok]

        logger.debug(
            "excerpt_embeddings_requested",
            cached=len(ready),
            computed=len(computed),
            coalesced=len(coalesced),
        )
        return unique([*ready, *computed, *coalesced])

    async def _embed_and_commit(self, needed: dict[ContentId, str]) -> list[ContentId]:
        loop = asyncio.get_running_loop()
        ids = list(needed)
        futures = {content_id: loop.create_future() for content_id in ids}
        # Registered before the first await so overlapping calls see them
        self._pending.update(futures)
        generation = self._generation
        committed: list[ContentId] = []

        try:
            vectors = await self.model.embed([needed[content_id] for content_id in ids])
            if generation != self._generation:
                logger.info("excerpt_embeddings_discarded", count=len(ids), reason="store cleared")
            else:
                rows = [(content_id, vectors[i]) for i, content_id in enumerate(ids) if content_id not in self._tombstones]
                self.excerpts.put_many(rows)
                committed = [content_id for content_id, _ in rows]
                self._spawn(self.cache.store_many(rows), "persist-excerpt-embeddings")
        except ApplicationError as e:
            logger.warning(
                "excerpt_embedding_failed",
                count=len(ids),
                error=e.message,
                error_code=e.code.value,
            )
        finally:
            done = set(committed)
            for content_id, future in futures.items():
                if self._pending.get(content_id) is future:
                    del self._pending[content_id]
                self._tombstones.discard(content_id)
                if not future.done():
                    future.set_result(content_id in done)

        return committed

    def load_precomputed(self, ids: Sequence[ContentId], blob: bytes) -> list[ContentId]:
        """Seed the excerpt map from a flat float32 blob without calling the model.

        Raises:
            MalformedDemoDataError: blob size does not match ``len(ids)`` vectors
        """
        matrix = decode_demo_blob(blob, len(ids), self.dimension)
        self.excerpts.put_many(
            (content_id, matrix[i]) for i, content_id in enumerate(ids) if content_id not in self.excerpts
        )
        logger.info("precomputed_embeddings_loaded", count=len(ids))
        return unique(ids)

    def delete_excerpt(self, excerpt_id: ContentId) -> bool:
        """Remove one excerpt from memory now and from the durable cache later.

        Aggregates that include the excerpt are left as they are.
        """
        removed = self.excerpts.remove(excerpt_id)
        self.membership.forget([excerpt_id])
        self._mark_deleted([excerpt_id])
        self._spawn(self.cache.delete_many([excerpt_id]), "delete-excerpt-embedding")
        return removed

    def _mark_deleted(self, ids: Iterable[ContentId]) -> None:
        # Keep in-flight embeddings and a running hydration from restoring these ids
        hydrating = self._hydration_state is HydrationState.HYDRATING
        for content_id in ids:
            if content_id in self._pending:
                self._tombstones.add(content_id)
            if hydrating:
                self._deleted_while_hydrating.add(content_id)

    # Aggregates

    def compute_collection_embeddings(
        self,
        kind: Collection,
        targets: Sequence[tuple[ContentId, Sequence[ContentId]]],
    ) -> list[ContentId]:
        """Store the mean of each target's embedded members.

        The divisor is the number of members that actually have a vector.
        A target with no embedded members ends up with no vector at all.

        Returns:
            Ids of the collections that now have a vector
        """
        collection = self.collection(kind)
        stored: list[tuple[ContentId, np.ndarray]] = []
        emptied: list[ContentId] = []

        for collection_id, member_ids in targets:
            found = [
                vector
                for member_id in unique(member_ids)
                if (vector := self.excerpts.get(member_id)) is not None
            ]
            if found:
                stored.append((collection_id, mean_vector(found)))
            else:
                emptied.append(collection_id)

        collection.put_many(stored)
        collection.remove_many(emptied)
        logger.debug(
            "collection_embeddings_computed",
            collection=kind.value,
            stored=len(stored),
            absent=len(emptied),
        )
        return [collection_id for collection_id, _ in stored]

    def delete_collection_cascade(
        self,
        kind: Collection,
        collection_id: ContentId,
        member_ids: Sequence[ContentId],
    ) -> None:
        """Drop a collection vector and every listed member excerpt."""
        self.collection(kind).remove(collection_id)
        self.excerpts.remove_many(member_ids)
        self.membership.forget(member_ids)
        self._mark_deleted(member_ids)
        self._spawn(self.cache.delete_many(list(member_ids)), "delete-collection-embeddings")
        logger.info(
            "collection_deleted",
            collection=kind.value,
            collection_id=collection_id,
            members=len(member_ids),
        )

    # Reset

    def clear(self) -> None:
        """Wipe every in-memory map and the membership index."""
        self._generation += 1
        for kind in Collection:
            self.collection(kind).clear()
        self.membership.clear()
        self._tombstones.clear()
        self._deleted_while_hydrating.clear()
        self._hydration = None
        self._hydration_state = HydrationState.EMPTY
        logger.info("embedding_store_cleared", generation=self._generation)

    def prune_durable(self, retain_ids: Iterable[ContentId]) -> None:
        """Schedule deletion of durable entries whose ids are not in ``retain_ids``."""
        self._spawn(self.cache.retain_only(list(retain_ids)), "prune-durable-embeddings")

    # Background work

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.get_running_loop().create_task(self._in_order(coro), name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    async def _in_order(self, coro: Coroutine[Any, Any, Any]) -> Any:
        async with self._durable_lock:
            return await coro

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            logger.error("background_task_failed", task=task.get_name(), error=error)

    async def drain(self) -> None:
        """Wait for every scheduled durable write or delete to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
