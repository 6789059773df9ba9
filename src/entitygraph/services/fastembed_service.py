"""FastEmbed embedding service.

Local ONNX embeddings through the fastembed library: no API key and no
network after the model download. Install with ``pip install entity-graph[fastembed]``.
"""

import asyncio
import logging
from typing import Optional

from ..interfaces import IEmbeddingService
from ..utils import cosine_similarity, normalize_embedding

logger = logging.getLogger(__name__)

_MODEL_DIMENSIONS: dict[str, int] = {
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "intfloat/multilingual-e5-large": 1024,
    "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2": 384,
}

DEFAULT_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"


class FastEmbedService(IEmbeddingService):
    """Local embedding service.

    The ``TextEmbedding`` model loads lazily on first use. Inference runs in
    a worker thread so it does not block the event loop.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        dimensions: Optional[int] = None,
        cache_dir: Optional[str] = None,
    ):
        if dimensions is not None and dimensions < 1:
            raise ValueError(f"Dimensions must be >= 1, got {dimensions}")

        self.model_name = model
        self.dimensions = dimensions if dimensions is not None else _MODEL_DIMENSIONS.get(model, 384)
        self._cache_dir = cache_dir
        self._model = None

    def _get_model(self):
        if self._model is None:
            from fastembed import TextEmbedding

            kwargs: dict = {"model_name": self.model_name}
            if self._cache_dir is not None:
                kwargs["cache_dir"] = self._cache_dir
            self._model = TextEmbedding(**kwargs)
            logger.info("FastEmbed model loaded: %s (%d dims)", self.model_name, self.dimensions)
        return self._model

    def __repr__(self) -> str:
        return f"FastEmbedService(model={self.model_name!r}, dimensions={self.dimensions})"

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        model = self._get_model()
        return [normalize_embedding(emb.tolist()) for emb in model.embed(texts)]

    async def embed(self, text: str) -> list[float]:
        results = await self.embed_batch([text])
        return results[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed_sync, texts)

    def similarity(self, a: list[float], b: list[float]) -> float:
        return cosine_similarity(a, b)
