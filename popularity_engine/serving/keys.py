"""
Cache Keys

Key layout shared by the query service (readers) and the aggregation and
leaderboard engines (writers). Every prefix ends with ``:`` so that game 1
never matches game 12 and ``daily`` never matches ``daily_top``.
"""

from datetime import date, datetime
from typing import Optional

import structlog

from popularity_engine.serving.cache import CacheManager

logger = structlog.get_logger(__name__)

GAMES_KEY = "games:all"
SOURCES_KEY = "sources:all"


def metrics_key(source_id: Optional[int]) -> str:
    return f"metrics:{source_id if source_id is not None else 'all'}"


def popularity_prefix(game_id: int) -> str:
    return f"popularity:{game_id}:"


def popularity_key(game_id: int, start_date: date, end_date: date) -> str:
    return f"{popularity_prefix(game_id)}{start_date.isoformat()}:{end_date.isoformat()}"


def game_metrics_prefix(game_id: int) -> str:
    return f"game_metrics:{game_id}:"


def game_metrics_key(game_id: int, start_date: date, end_date: date) -> str:
    return f"{game_metrics_prefix(game_id)}{start_date.isoformat()}:{end_date.isoformat()}"


def leaderboard_prefix(period: str) -> str:
    return f"leaderboard:{period}:"


def leaderboard_key(period: str, ts: Optional[datetime]) -> str:
    return f"{leaderboard_prefix(period)}{ts.isoformat() if ts is not None else 'latest'}"


async def invalidate_popularity(cache: CacheManager, game_id: int) -> int:
    """Drop everything derived from a game's popularity data"""
    removed = await cache.invalidate_prefix(popularity_prefix(game_id))
    removed += await cache.invalidate_prefix(game_metrics_prefix(game_id))
    if await cache.delete(GAMES_KEY):
        removed += 1
    logger.debug("Popularity cache cleared", game_id=game_id, removed=removed)
    return removed


async def invalidate_leaderboard(cache: CacheManager, period: str) -> int:
    """Drop every cached snapshot of a period"""
    removed = await cache.invalidate_prefix(leaderboard_prefix(period))
    logger.debug("Leaderboard cache cleared", period=period, removed=removed)
    return removed
