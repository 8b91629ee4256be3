"""
Query Service

Read path for games, metric catalog, popularity series and leaderboards.
Every read consults the cache first and falls back to the storage gateway.
Invalid input (unknown game, inverted or future range, blank period) yields an
empty list, never an error.
"""

from datetime import date, datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Type, TypeVar

import structlog

from popularity_engine.config import PopularitySettings
from popularity_engine.engine.validation import (
    Clock,
    is_valid_game_id,
    normalize_timestamp,
    query_range,
    utcnow,
)
from popularity_engine.schemas import (
    Game,
    GameMetricDaily,
    LeaderboardSnapshot,
    Metric,
    MetricSource,
    PopularityIndexDaily,
    Record,
)
from popularity_engine.serving import keys
from popularity_engine.serving.cache import CacheManager
from popularity_engine.storage.gateway import StorageGateway

logger = structlog.get_logger(__name__)

R = TypeVar("R", bound=Record)


class PopularityQueryService:
    """
    Cache-first read operations.
    
    Example:
        queries = PopularityQueryService(gateway, cache)
        series = await queries.get_game_popularity(1, date(2025, 1, 1), date(2025, 1, 31))
    """
    
    def __init__(
        self,
        gateway: StorageGateway,
        cache: CacheManager,
        settings: Optional[PopularitySettings] = None,
        clock: Clock = utcnow,
    ):
        self.gateway = gateway
        self.cache = cache
        self.settings = settings or PopularitySettings()
        self.clock = clock
    
    async def _cached(
        self,
        key: str,
        model: Type[R],
        loader: Callable[[], Awaitable[Sequence[R]]],
    ) -> List[R]:
        """
        Serve ``key`` from cache, loading and caching JSON dumps on miss.
        
        A load that overlaps an invalidation of ``key`` is returned but not
        cached.
        """
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit", key=key, count=len(cached))
            return [model.model_validate(item) for item in cached]
        
        generation = self.cache.generation()
        records = list(await loader())
        await self.cache.set(
            key,
            [r.model_dump(mode="json") for r in records],
            generation=generation,
        )
        return records
    
    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------
    
    async def list_games(self) -> List[Game]:
        """All games ordered by name"""
        games = await self._cached(keys.GAMES_KEY, Game, self.gateway.list_games)
        logger.info("Games listed", count=len(games))
        return games
    
    async def list_metric_sources(self) -> List[MetricSource]:
        """All metric sources ordered by name"""
        return await self._cached(keys.SOURCES_KEY, MetricSource, self.gateway.list_metric_sources)
    
    async def list_metrics(self, source_id: Optional[int] = None) -> List[Metric]:
        """Active metrics, optionally for one source"""
        return await self._cached(
            keys.metrics_key(source_id),
            Metric,
            lambda: self.gateway.list_metrics(source_id=source_id, active_only=True),
        )
    
    # -------------------------------------------------------------------------
    # Per-game series
    # -------------------------------------------------------------------------
    
    async def get_game_popularity(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[PopularityIndexDaily]:
        """Index rows in [start_date, end_date], date ascending"""
        bounds = self._bounds(game_id, start_date, end_date)
        if bounds is None:
            return []
        start, end = bounds
        
        rows = await self._cached(
            keys.popularity_key(game_id, start, end),
            PopularityIndexDaily,
            lambda: self.gateway.list_popularity_indices(game_id, start, end),
        )
        logger.info("Game popularity fetched", game_id=game_id, count=len(rows))
        return rows
    
    async def get_game_metrics(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[GameMetricDaily]:
        """Raw facts in [start_date, end_date], ordered by (date, metric_id)"""
        bounds = self._bounds(game_id, start_date, end_date)
        if bounds is None:
            return []
        start, end = bounds
        
        return await self._cached(
            keys.game_metrics_key(game_id, start, end),
            GameMetricDaily,
            lambda: self.gateway.list_game_metrics(game_id, start, end),
        )
    
    def _bounds(self, game_id: int, start_date: date, end_date: date):
        if not is_valid_game_id(game_id):
            logger.warning("Invalid game id", game_id=game_id)
            return None
        
        bounds = query_range(
            start_date,
            end_date,
            today=self.clock().date(),
            max_days=self.settings.max_query_range_days,
        )
        if bounds is None:
            logger.warning(
                "Date range rejected",
                game_id=game_id,
                start_date=str(start_date),
                end_date=str(end_date),
            )
        return bounds
    
    # -------------------------------------------------------------------------
    # Leaderboards
    # -------------------------------------------------------------------------
    
    async def get_leaderboard(
        self,
        period: str,
        timestamp: Optional[datetime] = None,
    ) -> List[LeaderboardSnapshot]:
        """
        Snapshot rows ordered by rank.
        
        Without ``timestamp`` the latest snapshot of the period is returned.
        """
        if not isinstance(period, str) or not period.strip():
            logger.warning("Empty leaderboard period")
            return []
        period = period.strip()
        if timestamp is not None:
            timestamp = normalize_timestamp(timestamp)
        
        async def load() -> List[LeaderboardSnapshot]:
            ts = timestamp
            if ts is None:
                ts = await self.gateway.latest_snapshot_timestamp(period)
                if ts is None:
                    return []
            return await self.gateway.list_leaderboard(period, ts)
        
        rows = await self._cached(keys.leaderboard_key(period, timestamp), LeaderboardSnapshot, load)
        logger.info("Leaderboard fetched", period=period, count=len(rows))
        return rows
    
    # -------------------------------------------------------------------------
    # Invalidation hooks
    # -------------------------------------------------------------------------
    
    async def clear_popularity_cache(self, game_id: int) -> int:
        return await keys.invalidate_popularity(self.cache, game_id)
    
    async def clear_leaderboard_cache(self, period: str) -> int:
        return await keys.invalidate_leaderboard(self.cache, period.strip())
