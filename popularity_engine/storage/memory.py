"""
In-Memory Storage Gateway

Process-local gateway for tests and tooling. An ``asyncio.Lock`` serializes
the check-then-insert write paths so concurrent callers cannot create
duplicate index or snapshot rows.
"""

import asyncio
from datetime import date, datetime
from itertools import count
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from popularity_engine.schemas import (
    Game,
    GameMetricDaily,
    LeaderboardSnapshot,
    Metric,
    MetricSource,
    PopularityIndexDaily,
)
from popularity_engine.storage.gateway import StorageGateway

logger = structlog.get_logger(__name__)


class InMemoryStorageGateway(StorageGateway):
    """
    Dictionary-backed storage gateway.
    
    Example:
        gateway = InMemoryStorageGateway()
        gateway.add_games([Game(game_id=1, name="Apex Legends")])
        games = await gateway.list_games()
    """
    
    def __init__(self):
        self.games: Dict[int, Game] = {}
        self.metric_sources: Dict[int, MetricSource] = {}
        self.metrics: Dict[int, Metric] = {}
        self.game_metrics: Dict[Tuple[int, int, date], GameMetricDaily] = {}
        self.popularity: Dict[Tuple[int, date], PopularityIndexDaily] = {}
        self.snapshots: Dict[Tuple[str, datetime], List[LeaderboardSnapshot]] = {}
        
        self._lock = asyncio.Lock()
        self._ids = count(1)
    
    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------
    
    def add_games(self, games: Sequence[Game]) -> "InMemoryStorageGateway":
        for game in games:
            self.games[game.game_id] = game
        return self
    
    def add_metric_sources(self, sources: Sequence[MetricSource]) -> "InMemoryStorageGateway":
        for source in sources:
            self.metric_sources[source.source_id] = source
        return self
    
    def add_metrics(self, metrics: Sequence[Metric]) -> "InMemoryStorageGateway":
        for metric in metrics:
            self.metrics[metric.metric_id] = metric
        return self
    
    def add_game_metrics(self, facts: Sequence[GameMetricDaily]) -> "InMemoryStorageGateway":
        for fact in facts:
            key = (fact.game_id, fact.metric_id, fact.date)
            if fact.id is None:
                fact = fact.model_copy(update={"id": next(self._ids)})
            self.game_metrics[key] = fact
        return self
    
    def add_popularity_indices(self, rows: Sequence[PopularityIndexDaily]) -> "InMemoryStorageGateway":
        for row in rows:
            self.popularity[(row.game_id, row.date)] = self._with_id(row)
        return self
    
    def _with_id(self, row: PopularityIndexDaily) -> PopularityIndexDaily:
        if row.id is None:
            return row.model_copy(update={"id": next(self._ids)})
        return row
    
    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------
    
    async def list_games(self) -> List[Game]:
        return sorted(self.games.values(), key=lambda g: (g.name, g.game_id))
    
    async def get_game(self, game_id: int) -> Optional[Game]:
        return self.games.get(game_id)
    
    async def list_metric_sources(self) -> List[MetricSource]:
        return sorted(self.metric_sources.values(), key=lambda s: (s.name, s.source_id))
    
    async def list_metrics(
        self,
        source_id: Optional[int] = None,
        active_only: bool = True,
    ) -> List[Metric]:
        metrics = [
            m for m in self.metrics.values()
            if (not active_only or m.is_active)
            and (source_id is None or m.source_id == source_id)
        ]
        return sorted(metrics, key=lambda m: (m.source_id, m.code, m.metric_id))
    
    # -------------------------------------------------------------------------
    # Raw facts
    # -------------------------------------------------------------------------
    
    async def list_game_metrics(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[GameMetricDaily]:
        facts = [
            f for (g, _, d), f in self.game_metrics.items()
            if g == game_id and start_date <= d <= end_date
        ]
        return sorted(facts, key=lambda f: (f.date, f.metric_id))
    
    async def get_game_metric(
        self,
        game_id: int,
        metric_id: int,
        on_date: date,
    ) -> Optional[GameMetricDaily]:
        return self.game_metrics.get((game_id, metric_id, on_date))
    
    # -------------------------------------------------------------------------
    # Popularity index
    # -------------------------------------------------------------------------
    
    async def get_popularity_index(
        self,
        game_id: int,
        on_date: date,
    ) -> Optional[PopularityIndexDaily]:
        return self.popularity.get((game_id, on_date))
    
    async def list_popularity_indices(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[PopularityIndexDaily]:
        rows = [
            r for (g, d), r in self.popularity.items()
            if g == game_id and start_date <= d <= end_date
        ]
        return sorted(rows, key=lambda r: r.date)
    
    async def latest_popularity_indices(
        self,
        as_of: date,
        since: Optional[date] = None,
    ) -> List[PopularityIndexDaily]:
        since = since or as_of
        latest: Dict[int, PopularityIndexDaily] = {}
        for (game_id, d), row in self.popularity.items():
            if not since <= d <= as_of:
                continue
            current = latest.get(game_id)
            if current is None or d > current.date:
                latest[game_id] = row
        return [latest[g] for g in sorted(latest)]
    
    async def insert_popularity_index(self, row: PopularityIndexDaily) -> bool:
        async with self._lock:
            key = (row.game_id, row.date)
            if key in self.popularity:
                return False
            self.popularity[key] = self._with_id(row)
            return True
    
    # -------------------------------------------------------------------------
    # Leaderboard snapshots
    # -------------------------------------------------------------------------
    
    async def snapshot_exists(self, period: str, ts: datetime) -> bool:
        return (period, ts) in self.snapshots
    
    async def list_leaderboard(self, period: str, ts: datetime) -> List[LeaderboardSnapshot]:
        return sorted(self.snapshots.get((period, ts), []), key=lambda r: r.rank)
    
    async def latest_snapshot_timestamp(
        self,
        period: str,
        before: Optional[datetime] = None,
    ) -> Optional[datetime]:
        stamps = [
            ts for (p, ts) in self.snapshots
            if p == period and (before is None or ts < before)
        ]
        return max(stamps) if stamps else None
    
    async def insert_leaderboard_snapshot(self, rows: Sequence[LeaderboardSnapshot]) -> bool:
        if not rows:
            return True
        
        keys = {(r.period, r.ts) for r in rows}
        if len(keys) != 1:
            raise ValueError("Snapshot rows must share one (period, ts)")
        key = keys.pop()
        
        async with self._lock:
            if key in self.snapshots:
                return False
            self.snapshots[key] = [
                r if r.snapshot_id is not None
                else r.model_copy(update={"snapshot_id": next(self._ids)})
                for r in rows
            ]
        
        logger.debug("Snapshot stored", period=key[0], ts=key[1].isoformat(), rows=len(rows))
        return True
