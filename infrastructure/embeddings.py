"""
Embedding Provider
==================

Text to fixed-length vector, consumed by Layer-3 context retrieval and
by the semantic tier of deduplication.

The default implementation runs a local sentence-transformers model in a
worker thread and caches vectors in Redis by content hash. Cache outages
only cost a recomputation.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import numpy as np
from loguru import logger

from config.settings import EmbeddingSettings, get_settings
from core.exceptions import CacheError
from infrastructure.redis_client import RedisClient


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; zero vectors compare as 0."""
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    if vec_a.shape != vec_b.shape or vec_a.size == 0:
        return 0.0
    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


class EmbeddingProvider(ABC):
    """Capability interface: ``embed(text) -> vector``."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for ``text``."""


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers model with a Redis read-through cache."""

    CACHE_NAMESPACE = "embedding"

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        embedding_settings: Optional[EmbeddingSettings] = None,
    ):
        self._settings = embedding_settings or get_settings().embedding
        self._redis = redis_client
        self._model = None
        self._model_lock = asyncio.Lock()

    async def _get_model(self):
        async with self._model_lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading embedding model: {self._settings.model_name}")
                self._model = await asyncio.to_thread(
                    SentenceTransformer, self._settings.model_name
                )
        return self._model

    async def embed(self, text: str) -> list[float]:
        key = RedisClient.content_key(self.CACHE_NAMESPACE, text)

        if self._redis is not None:
            try:
                cached = await self._redis.get_embedding(key)
                if cached is not None:
                    return cached.tolist()
            except CacheError as e:
                logger.warning(f"Embedding cache read skipped: {e.message}")

        model = await self._get_model()
        vector = await asyncio.to_thread(
            model.encode, text, normalize_embeddings=True, show_progress_bar=False
        )
        vector = np.asarray(vector, dtype=np.float32)

        if self._redis is not None:
            try:
                await self._redis.store_embedding(key, vector)
            except CacheError as e:
                logger.warning(f"Embedding cache write skipped: {e.message}")

        return vector.tolist()
