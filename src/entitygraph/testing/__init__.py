"""Testing utilities for Entity Graph."""

from .embedding_utils import hash_to_embedding
from .mocks import MockEmbeddingService, MockFusionProvider

__all__ = [
    "hash_to_embedding",
    "MockEmbeddingService",
    "MockFusionProvider",
]
