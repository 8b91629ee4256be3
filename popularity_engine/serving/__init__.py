"""
Serving Module
"""
from .cache import CacheBackend, CacheManager, MemoryCache, RedisCache
from .keys import invalidate_leaderboard, invalidate_popularity
from .query_service import PopularityQueryService

__all__ = [
    "CacheBackend",
    "CacheManager",
    "MemoryCache",
    "RedisCache",
    "invalidate_leaderboard",
    "invalidate_popularity",
    "PopularityQueryService",
]
