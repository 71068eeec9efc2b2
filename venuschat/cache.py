"""
Compressed-context cache.

One entry per conversation holds the latest summary produced by the Context
Compressor. Writes overwrite: concurrent compressions of the same
conversation are last-writer-wins.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

import redis.asyncio as redis_async

from venuschat.config.logging import get_logger
from venuschat.config.settings import CacheSettings

logger = get_logger(__name__)


class ContextCache(ABC):
    """Get/set compressed-context text by conversation id."""

    @abstractmethod
    async def get(self, conversation_id: str) -> str | None:
        """Return the cached summary, or None if absent or expired."""

    @abstractmethod
    async def set(self, conversation_id: str, summary: str) -> None:
        """Store a summary, replacing any previous one."""

    @abstractmethod
    async def delete(self, conversation_id: str) -> None:
        """Drop the entry for a conversation."""

    async def close(self) -> None:
        """Release connections. No-op by default."""


class RedisContextCache(ContextCache):
    """
    Redis-backed cache: `SETEX {prefix}:{conversation_id}` with a TTL.

    Args:
        client: An async Redis client with decode_responses=True
        ttl_seconds: Entry lifetime
        key_prefix: Key namespace
    """

    def __init__(self, client: redis_async.Redis, ttl_seconds: int = 86400, key_prefix: str = "compressed"):
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> RedisContextCache:
        client = redis_async.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=1.0,
            socket_timeout=1.0,
            health_check_interval=30,
        )
        return cls(client, ttl_seconds=settings.compressed_ttl_seconds, key_prefix=settings.key_prefix)

    def _key(self, conversation_id: str) -> str:
        return f"{self._key_prefix}:{conversation_id}"

    async def get(self, conversation_id: str) -> str | None:
        return await self._client.get(self._key(conversation_id))

    async def set(self, conversation_id: str, summary: str) -> None:
        await self._client.setex(self._key(conversation_id), self._ttl_seconds, summary)

    async def delete(self, conversation_id: str) -> None:
        await self._client.delete(self._key(conversation_id))

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryContextCache(ContextCache):
    """Process-local cache for the CLI and deployments without Redis."""

    def __init__(self, ttl_seconds: int = 86400):
        self._ttl_seconds = ttl_seconds
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, conversation_id: str) -> str | None:
        entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        expires_at, summary = entry
        if time.monotonic() >= expires_at:
            del self._entries[conversation_id]
            return None
        return summary

    async def set(self, conversation_id: str, summary: str) -> None:
        self._entries[conversation_id] = (time.monotonic() + self._ttl_seconds, summary)

    async def delete(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)


def create_context_cache(settings: CacheSettings) -> ContextCache:
    """Redis when a URL is configured, otherwise an in-memory cache."""
    if settings.redis_url:
        return RedisContextCache.from_settings(settings)
    logger.warning("No Redis URL configured; compressed context is kept in memory")
    return InMemoryContextCache(ttl_seconds=settings.compressed_ttl_seconds)
