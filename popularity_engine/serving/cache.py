"""
Cache Module

Read-through caching layer with:
- Pluggable backends (process-local memory, shared Redis)
- JSON-compatible values
- TTL management
- Prefix invalidation

The cache is an explicitly constructed component: build one per process and
hand it to the services that need it. Correctness never depends on it.
"""

import json
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog
from cachetools import TLRUCache
from redis.asyncio import Redis, ConnectionPool

from popularity_engine.config import CacheSettings, RedisSettings

logger = structlog.get_logger(__name__)

TTL = Union[int, float, timedelta]


def _seconds(ttl: TTL) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


class CacheBackend(ABC):
    """Key/value store with per-entry expiration"""
    
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Value or None on miss/expiry"""
    
    @abstractmethod
    async def set(self, key: str, value: Any, ttl: TTL) -> bool:
        """Store value for ``ttl``"""
    
    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Drop one key"""
    
    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``"""
    
    async def close(self) -> None:
        return None


class MemoryCache(CacheBackend):
    """
    Process-local cache on ``cachetools.TLRUCache``.
    
    Each entry is stored as (ttl_seconds, value) so the per-entry TTL drives
    its expiry time. Expired entries are dropped on every write and the size is
    bounded by ``maxsize`` (least recently used evicted first). Every
    operation completes without awaiting, so each one is atomic with respect to
    other coroutines on the same loop.
    """
    
    def __init__(
        self,
        maxsize: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, entry, now: now + entry[0],
            timer=clock,
        )
    
    @property
    def maxsize(self) -> int:
        return int(self._entries.maxsize)
    
    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)
    
    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry[1]
    
    async def set(self, key: str, value: Any, ttl: TTL) -> bool:
        self._entries[key] = (_seconds(ttl), value)
        return True
    
    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None
    
    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in list(self._entries) if k.startswith(prefix)]
        return sum(1 for key in keys if self._entries.pop(key, None) is not None)
    
    async def clear(self) -> None:
        self._entries.clear()


class RedisCache(CacheBackend):
    """
    Redis-backed cache shared between processes.
    
    Values are JSON serialized; prefix invalidation walks the keyspace with
    SCAN rather than KEYS.
    """
    
    def __init__(self, client: Redis):
        self._client = client
    
    @classmethod
    async def connect(cls, redis_settings: RedisSettings) -> "RedisCache":
        """Create a pooled client and verify the connection"""
        pool = ConnectionPool.from_url(
            redis_settings.get_url(),
            max_connections=redis_settings.max_connections,
            socket_timeout=redis_settings.socket_timeout,
            decode_responses=True,
        )
        client = Redis(connection_pool=pool)
        
        try:
            await client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            await client.aclose()
            raise
        
        return cls(client)
    
    async def get(self, key: str) -> Optional[Any]:
        value = await self._client.get(key)
        
        if value is None:
            return None
        
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    
    async def set(self, key: str, value: Any, ttl: TTL) -> bool:
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to serialize value for cache: {e}")
            return False
        
        await self._client.setex(key, max(1, int(_seconds(ttl))), serialized)
        return True
    
    async def delete(self, key: str) -> bool:
        return await self._client.delete(key) > 0
    
    async def delete_prefix(self, prefix: str) -> int:
        keys = [key async for key in self._client.scan_iter(match=f"{prefix}*")]
        
        if not keys:
            return 0
        
        return await self._client.delete(*keys)
    
    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")


class CacheManager:
    """
    Cache manager with namespace support and automatic key generation.
    
    Invalidations are counted. A reader takes ``generation()`` before loading
    and passes it to ``set``; the value is dropped if any invalidation touching
    the key happened in between, so a slow read cannot re-cache data that a
    concurrent write just invalidated. Generations are process-local.
    
    Example:
        cache = CacheManager(MemoryCache(), "popularity")
        await cache.set("games:all", payload, ttl=900)
        games = await cache.get("games:all")
    """
    
    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = "popularity",
        default_ttl: TTL = 900,
    ):
        self.backend = backend
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._generation = 0
        self._invalidated: Dict[str, int] = {}
    
    @classmethod
    async def from_settings(
        cls,
        cache_settings: CacheSettings,
        redis_settings: Optional[RedisSettings] = None,
    ) -> "CacheManager":
        """Build the configured backend"""
        if cache_settings.backend == "redis":
            backend: CacheBackend = await RedisCache.connect(redis_settings or RedisSettings())
        else:
            backend = MemoryCache(maxsize=cache_settings.max_entries)
        
        logger.info("Cache initialized", backend=cache_settings.backend, ttl=cache_settings.default_ttl)
        return cls(backend, cache_settings.namespace, cache_settings.default_ttl)
    
    def _key(self, key: str) -> str:
        """Generate namespaced key"""
        return f"{self.namespace}:{key}"
    
    def generation(self) -> int:
        """Invalidation counter to pass to ``set`` after a slow load"""
        return self._generation
    
    def _record_invalidation(self, prefix: str) -> None:
        self._generation += 1
        self._invalidated[prefix] = self._generation
    
    def _invalidated_since(self, key: str, generation: int) -> bool:
        return any(
            changed > generation and key.startswith(prefix)
            for prefix, changed in self._invalidated.items()
        )
    
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        return await self.backend.get(self._key(key))
    
    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[TTL] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Set value in cache.
        
        With ``generation``, the write is skipped when the key was invalidated
        after that generation was taken.
        """
        if generation is not None and self._invalidated_since(key, generation):
            logger.debug("Stale cache write skipped", key=key, generation=generation)
            return False
        return await self.backend.set(self._key(key), value, ttl or self.default_ttl)
    
    async def delete(self, key: str) -> bool:
        """Delete key from cache"""
        self._record_invalidation(key)
        return await self.backend.delete(self._key(key))
    
    async def invalidate_prefix(self, prefix: str) -> int:
        """Invalidate every key in the namespace starting with ``prefix``"""
        self._record_invalidation(prefix)
        removed = await self.backend.delete_prefix(self._key(prefix))
        logger.debug("Cache prefix invalidated", prefix=prefix, removed=removed)
        return removed
    
    async def invalidate_all(self) -> int:
        """Invalidate all keys in namespace"""
        self._record_invalidation("")
        return await self.backend.delete_prefix(f"{self.namespace}:")
    
    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[TTL] = None,
    ) -> Any:
        """
        Get from cache or compute and cache.
        
        Args:
            key: Cache key
            factory: Async function to compute value if not cached
            ttl: Time-to-live
            
        Returns:
            Cached or computed value
        """
        value = await self.get(key)
        
        if value is not None:
            logger.debug("Cache hit", key=key)
            return value
        
        generation = self.generation()
        value = await factory()
        await self.set(key, value, ttl, generation=generation)
        
        return value
    
    async def close(self) -> None:
        await self.backend.close()
