"""
Redis Client for Embedding Cache and Job Locks
===============================================

Provides async Redis operations for:
- Embedding vector storage (binary float32 serialization)
- Content-addressed keys for deterministic cache lookups
- SET NX locks guarding batch-job starts
- Connection health monitoring

Every Redis failure surfaces as ``CacheError`` so callers can degrade
instead of failing the request.
"""

import hashlib
from typing import Any, Optional

import numpy as np
import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import RedisError

from config.settings import RedisSettings, get_settings
from core.exceptions import CacheError, InfrastructureError


class RedisClient:
    """Thin async wrapper over a pooled ``redis.asyncio.Redis`` connection."""

    def __init__(self, redis_settings: Optional[RedisSettings] = None):
        self._settings = redis_settings or get_settings().redis
        self._redis: Optional[aioredis.Redis] = None

    async def initialize(self) -> None:
        """Open the connection pool and verify connectivity."""
        try:
            self._redis = aioredis.from_url(
                str(self._settings.url),
                decode_responses=False,
                max_connections=self._settings.max_connections,
                socket_timeout=self._settings.socket_timeout,
                socket_connect_timeout=self._settings.socket_connect_timeout,
                health_check_interval=30,
            )
            await self._redis.ping()
            logger.info("Redis connection pool initialized successfully")
        except RedisError as e:
            logger.error(f"Failed to initialize Redis connection pool: {e}")
            raise InfrastructureError(f"Redis initialization failed: {e}", cause=e) from e

    @property
    def client(self) -> aioredis.Redis:
        if self._redis is None:
            raise CacheError("Redis client not initialized")
        return self._redis

    @staticmethod
    def content_key(namespace: str, content: str) -> str:
        """Deterministic key for text content."""
        digest = hashlib.sha256(content.encode("utf-8")).hexdigest()[:32]
        return f"{namespace}:{digest}"

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    async def store_embedding(self, key: str, embedding: np.ndarray) -> bool:
        try:
            payload = np.asarray(embedding, dtype=np.float32).tobytes()
            await self.client.set(key, payload, ex=self._settings.embedding_cache_ttl)
            return True
        except RedisError as e:
            logger.error(f"Failed to store embedding | key={key} | error={e}")
            raise CacheError(f"Embedding storage failed: {e}", cause=e) from e

    async def get_embedding(self, key: str) -> Optional[np.ndarray]:
        try:
            payload = await self.client.get(key)
        except RedisError as e:
            logger.error(f"Failed to retrieve embedding | key={key} | error={e}")
            raise CacheError(f"Embedding retrieval failed: {e}", cause=e) from e
        if payload is None:
            return None
        return np.frombuffer(payload, dtype=np.float32)

    # -------------------------------------------------------------------------
    # Generic key operations
    # -------------------------------------------------------------------------

    async def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """SET with optional expiry; with ``nx=True`` returns False when the key exists."""
        try:
            result = await self.client.set(key, value, ex=ex, nx=nx)
            return bool(result)
        except RedisError as e:
            logger.error(f"Redis SET failed | key={key} | error={e}")
            raise CacheError(f"SET failed: {e}", cause=e) from e

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self.client.get(key)
        except RedisError as e:
            logger.error(f"Redis GET failed | key={key} | error={e}")
            raise CacheError(f"GET failed: {e}", cause=e) from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(key))
        except RedisError as e:
            logger.error(f"Redis DELETE failed | key={key} | error={e}")
            raise CacheError(f"DELETE failed: {e}", cause=e) from e

    async def acquire_lock(self, name: str, ttl: Optional[int] = None) -> bool:
        """Best-effort distributed lock via SET NX EX."""
        return await self.set(
            f"lock:{name}", "1", ex=ttl or self._settings.job_lock_ttl, nx=True
        )

    async def release_lock(self, name: str) -> None:
        await self.delete(f"lock:{name}")

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, CacheError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection pool closed")
