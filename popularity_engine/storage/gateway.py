"""
Storage Gateway Contract

Async access to the catalog, metric, index and snapshot records consumed and
produced by the popularity engine. Implementations must enforce uniqueness of
(game_id, date) index rows and (period, ts, game_id) snapshot rows themselves,
and raise ``StorageError`` for backend failures.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import List, Optional, Sequence

from popularity_engine.schemas import (
    Game,
    GameMetricDaily,
    LeaderboardSnapshot,
    Metric,
    MetricSource,
    PopularityIndexDaily,
)


class StorageGateway(ABC):
    """Abstract storage gateway"""
    
    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------
    
    @abstractmethod
    async def list_games(self) -> List[Game]:
        """All games ordered by name"""
    
    @abstractmethod
    async def get_game(self, game_id: int) -> Optional[Game]:
        """Single game or None"""
    
    @abstractmethod
    async def list_metric_sources(self) -> List[MetricSource]:
        """All metric sources ordered by name"""
    
    @abstractmethod
    async def list_metrics(
        self,
        source_id: Optional[int] = None,
        active_only: bool = True,
    ) -> List[Metric]:
        """Metric definitions ordered by (source_id, code)"""
    
    # -------------------------------------------------------------------------
    # Raw facts
    # -------------------------------------------------------------------------
    
    @abstractmethod
    async def list_game_metrics(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[GameMetricDaily]:
        """Facts for one game in [start_date, end_date], ordered by (date, metric_id)"""
    
    @abstractmethod
    async def get_game_metric(
        self,
        game_id: int,
        metric_id: int,
        on_date: date,
    ) -> Optional[GameMetricDaily]:
        """Single fact or None"""
    
    # -------------------------------------------------------------------------
    # Popularity index
    # -------------------------------------------------------------------------
    
    @abstractmethod
    async def get_popularity_index(
        self,
        game_id: int,
        on_date: date,
    ) -> Optional[PopularityIndexDaily]:
        """Index row for (game_id, on_date) or None"""
    
    @abstractmethod
    async def list_popularity_indices(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[PopularityIndexDaily]:
        """Index rows for one game in [start_date, end_date], date ascending"""
    
    @abstractmethod
    async def latest_popularity_indices(
        self,
        as_of: date,
        since: Optional[date] = None,
    ) -> List[PopularityIndexDaily]:
        """
        Each game's most recent index row with ``since <= date <= as_of``.
        
        ``since`` defaults to ``as_of``. At most one row per game.
        """
    
    @abstractmethod
    async def insert_popularity_index(self, row: PopularityIndexDaily) -> bool:
        """
        Atomically insert the row if no row exists for (game_id, date).
        
        Returns:
            True if inserted, False if a row already existed
        """
    
    # -------------------------------------------------------------------------
    # Leaderboard snapshots
    # -------------------------------------------------------------------------
    
    @abstractmethod
    async def snapshot_exists(self, period: str, ts: datetime) -> bool:
        """Whether any row exists for (period, ts)"""
    
    @abstractmethod
    async def list_leaderboard(self, period: str, ts: datetime) -> List[LeaderboardSnapshot]:
        """Rows of one snapshot ordered by rank"""
    
    @abstractmethod
    async def latest_snapshot_timestamp(
        self,
        period: str,
        before: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Most recent ts for the period, optionally strictly before ``before``"""
    
    @abstractmethod
    async def insert_leaderboard_snapshot(self, rows: Sequence[LeaderboardSnapshot]) -> bool:
        """
        Insert one complete snapshot as a single all-or-nothing batch.
        
        All rows must share (period, ts). An empty batch inserts nothing and
        returns True.
        
        Returns:
            True if inserted, False if the snapshot already existed
        """
