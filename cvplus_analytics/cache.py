"""
cache.py — TTL caching layer for the analytics query side.

Namespace conventions:
  agg:{entity_type}:{entity_id}:{sha256(query)}      → aggregate list     TTL settings.cache_ttl_seconds
  events:{entity_type}:{entity_id}:{sha256(query)}   → event page         TTL settings.cache_ttl_seconds

Design:
  - TTLCache is a protocol; the owning service receives an instance, there is no
    module-level cache
  - LocalTTLCache: process-local dict with expiry, for single-process deployments and tests
  - RedisTTLCache: redis.asyncio, shared across workers; pool created once in lifespan
  - Values are stored as JSON in both backends, so a cache hit is always a fresh copy
  - Every write to an entity invalidates its whole key prefix
  - Logs only key prefixes, never cached values
"""
import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
AGGREGATES_PREFIX = "agg"
EVENTS_PREFIX = "events"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_entity_prefix(namespace: str, entity_type: str, entity_id: str) -> str:
    """Prefix shared by every cached query about one entity: {namespace}:{type}:{id}:"""
    return f"{namespace}:{entity_type}:{entity_id}:"


def make_query_key(namespace: str, entity_type: str, entity_id: str, **params: Any) -> str:
    """
    Build the key for one query. Parameters are serialized with sorted keys before
    hashing so the same query always maps to the same key.
    """
    normalized = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return make_entity_prefix(namespace, entity_type, entity_id) + digest


# ---------------------------------------------------------------------------
# Cache protocol
# ---------------------------------------------------------------------------

class TTLCache(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def invalidate(self, key: str) -> None: ...

    async def invalidate_prefix(self, prefix: str) -> int: ...

    async def clear(self) -> None: ...


class LocalTTLCache:
    """
    Process-local cache. Expired entries are removed lazily on read.
    `clock` is injectable so tests can step time without sleeping.
    """

    def __init__(self, default_ttl: int = 60, clock: Callable[[], float] = time.monotonic):
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        self._entries[key] = (self._clock() + ttl, json.dumps(value, default=str))

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    async def invalidate_prefix(self, prefix: str) -> int:
        stale = [k for k in self._entries if k.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisTTLCache:
    """Redis-backed cache. Keys are namespaced so clear() never touches foreign keys."""

    def __init__(self, client: aioredis.Redis, default_ttl: int = 60, namespace: str = "cvplus"):
        self._client = client
        self._default_ttl = default_ttl
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        await self._client.setex(self._key(key), ttl, json.dumps(value, default=str))

    async def invalidate(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def invalidate_prefix(self, prefix: str) -> int:
        removed = 0
        async for key in self._client.scan_iter(match=self._key(prefix) + "*"):
            removed += await self._client.delete(key)
        if removed:
            logger.debug("Invalidated %d cache keys prefix=%s", removed, prefix)
        return removed

    async def clear(self) -> None:
        await self.invalidate_prefix("")


# ---------------------------------------------------------------------------
# Pool factory — called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool(redis_url: str) -> aioredis.Redis:
    """
    Create an async Redis connection pool and verify connectivity with PING.
    Called once in FastAPI lifespan startup when cache_backend=redis.
    """
    client = aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established")
    return client
