"""
Popularity Service

Capability set exposed to the API and scheduler layers: the compute operations
of the aggregation engine and leaderboard generator plus the cache-first read
operations. One instance per process owns the cache shared by all of them.
"""

from datetime import date, datetime
from typing import List, Optional

import structlog

from popularity_engine.config import Settings, get_settings
from popularity_engine.config.logging import configure_logging
from popularity_engine.database.connection import (
    check_database_health,
    close_database,
    init_database,
)
from popularity_engine.engine.aggregation import PopularityAggregator
from popularity_engine.engine.leaderboard import LeaderboardGenerator
from popularity_engine.engine.scoring import ScoringPolicy
from popularity_engine.engine.validation import Clock, utcnow
from popularity_engine.schemas import (
    Game,
    GameMetricDaily,
    LeaderboardSnapshot,
    Metric,
    MetricSource,
    PopularityIndexDaily,
)
from popularity_engine.serving.cache import CacheManager, MemoryCache
from popularity_engine.serving.query_service import PopularityQueryService
from popularity_engine.storage.gateway import StorageGateway
from popularity_engine.storage.sql import SqlStorageGateway

logger = structlog.get_logger(__name__)


class PopularityService:
    """
    Facade over aggregation, leaderboard generation and queries.
    
    Example:
        service = await PopularityService.create()
        await service.compute_popularity_index(1, date.today())
        board = await service.get_leaderboard("daily")
        await service.close()
    """
    
    def __init__(
        self,
        gateway: StorageGateway,
        cache: Optional[CacheManager] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.cache = cache or CacheManager(
            MemoryCache(),
            namespace=self.settings.cache.namespace,
            default_ttl=self.settings.cache.default_ttl,
        )
        
        popularity = self.settings.popularity
        self.aggregator = PopularityAggregator(
            gateway, self.cache, ScoringPolicy(popularity), clock=clock
        )
        self.leaderboards = LeaderboardGenerator(gateway, self.cache, popularity, clock=clock)
        self.queries = PopularityQueryService(gateway, self.cache, popularity, clock=clock)
        self._owns_database = False
    
    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        create_tables: bool = False,
    ) -> "PopularityService":
        """Connect the database and cache configured in settings"""
        settings = settings or get_settings()
        
        configure_logging(settings=settings)
        engine = await init_database(settings.database, create_tables=create_tables)
        cache = await CacheManager.from_settings(settings.cache, settings.redis)
        
        service = cls(SqlStorageGateway(engine), cache, settings)
        service._owns_database = True
        logger.info("Popularity service started", environment=settings.app_env)
        return service
    
    async def close(self) -> None:
        await self.cache.close()
        if self._owns_database:
            await close_database()
        logger.info("Popularity service stopped")
    
    async def health(self) -> dict:
        """Database status when this service owns the connection"""
        if not self._owns_database:
            return {"status": "healthy", "storage": type(self.gateway).__name__}
        return await check_database_health()
    
    # Compute operations
    
    async def compute_popularity_index(self, game_id: int, on_date: date) -> PopularityIndexDaily:
        return await self.aggregator.compute_popularity_index(game_id, on_date)
    
    async def compute_daily_indices(self, on_date: date) -> int:
        return await self.aggregator.compute_daily_indices(on_date)
    
    async def generate_snapshot(self, period: str, timestamp: datetime) -> List[LeaderboardSnapshot]:
        return await self.leaderboards.generate_snapshot(period, timestamp)
    
    # Read operations
    
    async def list_games(self) -> List[Game]:
        return await self.queries.list_games()
    
    async def list_metric_sources(self) -> List[MetricSource]:
        return await self.queries.list_metric_sources()
    
    async def list_metrics(self, source_id: Optional[int] = None) -> List[Metric]:
        return await self.queries.list_metrics(source_id)
    
    async def get_game_popularity(
        self, game_id: int, start_date: date, end_date: date
    ) -> List[PopularityIndexDaily]:
        return await self.queries.get_game_popularity(game_id, start_date, end_date)
    
    async def get_game_metrics(
        self, game_id: int, start_date: date, end_date: date
    ) -> List[GameMetricDaily]:
        return await self.queries.get_game_metrics(game_id, start_date, end_date)
    
    async def get_leaderboard(
        self, period: str, timestamp: Optional[datetime] = None
    ) -> List[LeaderboardSnapshot]:
        return await self.queries.get_leaderboard(period, timestamp)
    
    async def clear_popularity_cache(self, game_id: int) -> int:
        return await self.queries.clear_popularity_cache(game_id)
    
    async def clear_leaderboard_cache(self, period: str) -> int:
        return await self.queries.clear_leaderboard_cache(period)
