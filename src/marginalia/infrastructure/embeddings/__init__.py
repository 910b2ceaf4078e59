from .cache import KeyValueBackend, PersistentEmbeddingCache
from .model import Embedder, EmbedderFactory, EmbeddingModel

__all__ = [
    "Embedder",
    "EmbedderFactory",
    "EmbeddingModel",
    "KeyValueBackend",
    "PersistentEmbeddingCache",
]
