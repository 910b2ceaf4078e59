"""Embedding collection types."""

from enum import Enum

ContentId = str
Neighbor = tuple[ContentId, float]


class Collection(str, Enum):
    """The three independent embedding namespaces."""

    EXCERPT = "excerpt"
    BOOK = "book"
    AUTHOR = "author"


class ModelState(str, Enum):
    """Lifecycle of the shared embedding model; a failed load goes back to UNINITIALIZED."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class HydrationState(str, Enum):
    """Lifecycle of the in-memory excerpt map relative to the durable cache."""

    EMPTY = "empty"
    HYDRATING = "hydrating"
    POPULATED = "populated"
