"""
SQL Storage Gateway

SQLAlchemy 2.0 async implementation of the storage gateway. PostgreSQL in
production (asyncpg), SQLite in tests (aiosqlite).

Uniqueness is enforced by the table constraints: index rows are written with
``INSERT .. ON CONFLICT DO NOTHING`` and snapshot batches in one transaction.
"""

from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, List, Optional, Sequence

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from popularity_engine.database.connection import create_session_factory
from popularity_engine.database.models import (
    DimGame,
    DimMetric,
    DimMetricSource,
    FactGameMetricDaily,
    FactLeaderboardSnapshot,
    FactPopularityIndexDaily,
)
from popularity_engine.exceptions import StorageError
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

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate backend failures into StorageError"""
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        logger.error(
            "Storage operation failed",
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise StorageError(f"{operation} failed: {e}", operation=operation) from e


class SqlStorageGateway(StorageGateway):
    """
    Storage gateway over an async SQLAlchemy engine.
    
    Example:
        engine = await init_database()
        gateway = SqlStorageGateway(engine)
        games = await gateway.list_games()
    """
    
    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._session = create_session_factory(engine)
    
    @property
    def dialect(self) -> str:
        return self._engine.dialect.name
    
    async def _all(self, stmt) -> list:
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
    
    async def _first(self, stmt):
        async with self._session() as session:
            result = await session.execute(stmt.limit(1))
            return result.scalars().first()
    
    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------
    
    async def list_games(self) -> List[Game]:
        with _storage_errors("list_games"):
            rows = await self._all(select(DimGame).order_by(DimGame.name, DimGame.game_id))
        return [Game.model_validate(r) for r in rows]
    
    async def get_game(self, game_id: int) -> Optional[Game]:
        with _storage_errors("get_game"):
            row = await self._first(select(DimGame).where(DimGame.game_id == game_id))
        return Game.model_validate(row) if row is not None else None
    
    async def list_metric_sources(self) -> List[MetricSource]:
        with _storage_errors("list_metric_sources"):
            rows = await self._all(
                select(DimMetricSource).order_by(DimMetricSource.name, DimMetricSource.source_id)
            )
        return [MetricSource.model_validate(r) for r in rows]
    
    async def list_metrics(
        self,
        source_id: Optional[int] = None,
        active_only: bool = True,
    ) -> List[Metric]:
        query = select(DimMetric)
        conditions = []
        
        if active_only:
            conditions.append(DimMetric.is_active.is_(True))
        if source_id is not None:
            conditions.append(DimMetric.source_id == source_id)
        if conditions:
            query = query.where(and_(*conditions))
        
        query = query.order_by(DimMetric.source_id, DimMetric.code, DimMetric.metric_id)
        
        with _storage_errors("list_metrics"):
            rows = await self._all(query)
        return [Metric.model_validate(r) for r in rows]
    
    # -------------------------------------------------------------------------
    # Raw facts
    # -------------------------------------------------------------------------
    
    async def list_game_metrics(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[GameMetricDaily]:
        query = (
            select(FactGameMetricDaily)
            .where(
                and_(
                    FactGameMetricDaily.game_id == game_id,
                    FactGameMetricDaily.date >= start_date,
                    FactGameMetricDaily.date <= end_date,
                )
            )
            .order_by(FactGameMetricDaily.date, FactGameMetricDaily.metric_id)
        )
        with _storage_errors("list_game_metrics"):
            rows = await self._all(query)
        return [GameMetricDaily.model_validate(r) for r in rows]
    
    async def get_game_metric(
        self,
        game_id: int,
        metric_id: int,
        on_date: date,
    ) -> Optional[GameMetricDaily]:
        query = select(FactGameMetricDaily).where(
            and_(
                FactGameMetricDaily.game_id == game_id,
                FactGameMetricDaily.metric_id == metric_id,
                FactGameMetricDaily.date == on_date,
            )
        )
        with _storage_errors("get_game_metric"):
            row = await self._first(query)
        return GameMetricDaily.model_validate(row) if row is not None else None
    
    # -------------------------------------------------------------------------
    # Popularity index
    # -------------------------------------------------------------------------
    
    async def get_popularity_index(
        self,
        game_id: int,
        on_date: date,
    ) -> Optional[PopularityIndexDaily]:
        query = select(FactPopularityIndexDaily).where(
            and_(
                FactPopularityIndexDaily.game_id == game_id,
                FactPopularityIndexDaily.date == on_date,
            )
        )
        with _storage_errors("get_popularity_index"):
            row = await self._first(query)
        return PopularityIndexDaily.model_validate(row) if row is not None else None
    
    async def list_popularity_indices(
        self,
        game_id: int,
        start_date: date,
        end_date: date,
    ) -> List[PopularityIndexDaily]:
        query = (
            select(FactPopularityIndexDaily)
            .where(
                and_(
                    FactPopularityIndexDaily.game_id == game_id,
                    FactPopularityIndexDaily.date >= start_date,
                    FactPopularityIndexDaily.date <= end_date,
                )
            )
            .order_by(FactPopularityIndexDaily.date)
        )
        with _storage_errors("list_popularity_indices"):
            rows = await self._all(query)
        return [PopularityIndexDaily.model_validate(r) for r in rows]
    
    async def latest_popularity_indices(
        self,
        as_of: date,
        since: Optional[date] = None,
    ) -> List[PopularityIndexDaily]:
        since = since or as_of
        
        latest = (
            select(
                FactPopularityIndexDaily.game_id,
                func.max(FactPopularityIndexDaily.date).label("max_date"),
            )
            .where(
                and_(
                    FactPopularityIndexDaily.date >= since,
                    FactPopularityIndexDaily.date <= as_of,
                )
            )
            .group_by(FactPopularityIndexDaily.game_id)
            .subquery()
        )
        query = (
            select(FactPopularityIndexDaily)
            .join(
                latest,
                and_(
                    FactPopularityIndexDaily.game_id == latest.c.game_id,
                    FactPopularityIndexDaily.date == latest.c.max_date,
                ),
            )
            .order_by(FactPopularityIndexDaily.game_id)
        )
        with _storage_errors("latest_popularity_indices"):
            rows = await self._all(query)
        return [PopularityIndexDaily.model_validate(r) for r in rows]
    
    async def insert_popularity_index(self, row: PopularityIndexDaily) -> bool:
        values = row.model_dump(exclude={"id"})
        insert = _UPSERT_DIALECTS.get(self.dialect)
        
        with _storage_errors("insert_popularity_index"):
            if insert is not None:
                stmt = (
                    insert(FactPopularityIndexDaily)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["game_id", "date"])
                )
                async with self._session() as session, session.begin():
                    result = await session.execute(stmt)
                return result.rowcount == 1
            
            # Dialects without ON CONFLICT rely on the unique constraint alone
            try:
                async with self._session() as session, session.begin():
                    session.add(FactPopularityIndexDaily(**values))
            except IntegrityError:
                return False
            return True
    
    # -------------------------------------------------------------------------
    # Leaderboard snapshots
    # -------------------------------------------------------------------------
    
    def _snapshot_where(self, period: str, ts: datetime):
        return and_(
            FactLeaderboardSnapshot.period == period,
            FactLeaderboardSnapshot.ts == ts,
        )
    
    async def snapshot_exists(self, period: str, ts: datetime) -> bool:
        query = select(FactLeaderboardSnapshot.snapshot_id).where(self._snapshot_where(period, ts))
        with _storage_errors("snapshot_exists"):
            found = await self._first(query)
        return found is not None
    
    async def list_leaderboard(self, period: str, ts: datetime) -> List[LeaderboardSnapshot]:
        query = (
            select(FactLeaderboardSnapshot)
            .where(self._snapshot_where(period, ts))
            .order_by(FactLeaderboardSnapshot.rank)
        )
        with _storage_errors("list_leaderboard"):
            rows = await self._all(query)
        return [LeaderboardSnapshot.model_validate(r) for r in rows]
    
    async def latest_snapshot_timestamp(
        self,
        period: str,
        before: Optional[datetime] = None,
    ) -> Optional[datetime]:
        conditions = [FactLeaderboardSnapshot.period == period]
        if before is not None:
            conditions.append(FactLeaderboardSnapshot.ts < before)
        
        query = select(func.max(FactLeaderboardSnapshot.ts)).where(and_(*conditions))
        with _storage_errors("latest_snapshot_timestamp"):
            async with self._session() as session:
                return (await session.execute(query)).scalar()
    
    async def insert_leaderboard_snapshot(self, rows: Sequence[LeaderboardSnapshot]) -> bool:
        if not rows:
            return True
        
        keys = {(r.period, r.ts) for r in rows}
        if len(keys) != 1:
            raise ValueError("Snapshot rows must share one (period, ts)")
        period, ts = keys.pop()
        
        with _storage_errors("insert_leaderboard_snapshot"):
            try:
                async with self._session() as session, session.begin():
                    existing = await session.execute(
                        select(FactLeaderboardSnapshot.snapshot_id)
                        .where(self._snapshot_where(period, ts))
                        .limit(1)
                    )
                    if existing.first() is not None:
                        return False
                    session.add_all([
                        FactLeaderboardSnapshot(**r.model_dump(exclude={"snapshot_id"}))
                        for r in rows
                    ])
            except IntegrityError:
                # A concurrent writer may have committed the same snapshot first
                if await self.snapshot_exists(period, ts):
                    logger.warning("Snapshot written concurrently", period=period, ts=ts.isoformat())
                    return False
                raise
        
        return True
