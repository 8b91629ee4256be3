"""
Leaderboard Generator

Freezes a ranked snapshot of every game's latest composite index for a
(period, timestamp). Ranking is by index value descending with ties broken by
ascending game id, so the same inputs always produce the same ranks.

Consistency: indices are read once and the snapshot is written in one batch.
An index computed for the reference date while a snapshot is being generated
may be missing from that snapshot. No lock spans the two operations.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
import structlog

from popularity_engine.config import PopularitySettings
from popularity_engine.engine.scoring import quantize
from popularity_engine.engine.validation import (
    Clock,
    require_past_timestamp,
    require_period,
    utcnow,
)
from popularity_engine.exceptions import StorageError
from popularity_engine.schemas import LeaderboardSnapshot, PopularityIndexDaily
from popularity_engine.serving.cache import CacheManager
from popularity_engine.serving.keys import invalidate_leaderboard
from popularity_engine.storage.gateway import StorageGateway

logger = structlog.get_logger(__name__)

# (lower bound, grade), checked top-down
GRADE_THRESHOLDS: Tuple[Tuple[Decimal, str], ...] = (
    (Decimal("90"), "S"),
    (Decimal("75"), "A"),
    (Decimal("60"), "B"),
    (Decimal("40"), "C"),
)


def grade_for(index_value: Decimal) -> str:
    """Letter grade of an index value"""
    for threshold, grade in GRADE_THRESHOLDS:
        if index_value >= threshold:
            return grade
    return "D"


def rank_indices(rows: Sequence[PopularityIndexDaily]) -> List[PopularityIndexDaily]:
    """Order by index value descending, then game id ascending"""
    return sorted(rows, key=lambda r: (-r.index_value, r.game_id))


def index_change(
    current: Decimal,
    previous: Optional[Decimal],
) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """(change_amount, change_rate in percent) versus the previous value"""
    if previous is None:
        return None, None
    
    amount = current - previous
    if previous == 0:
        return amount, None
    return amount, quantize(float(amount / previous * 100))


class LeaderboardGenerator:
    """
    Writes LeaderboardSnapshot batches.
    
    Example:
        generator = LeaderboardGenerator(gateway, cache)
        rows = await generator.generate_snapshot("daily", datetime(2025, 1, 15))
    """
    
    def __init__(
        self,
        gateway: StorageGateway,
        cache: Optional[CacheManager] = None,
        settings: Optional[PopularitySettings] = None,
        clock: Clock = utcnow,
    ):
        self.gateway = gateway
        self.cache = cache
        self.settings = settings or PopularitySettings()
        self.clock = clock
    
    def window_start(self, period: str, reference_date: date) -> date:
        """First date whose index counts toward a snapshot of ``period``"""
        offset = self.settings.period_windows.get(period.lower())
        if not offset or not any(offset.values()):
            return reference_date
        
        start = pd.Timestamp(reference_date) - pd.DateOffset(**offset)
        return start.date()
    
    async def generate_snapshot(self, period: str, timestamp: datetime) -> List[LeaderboardSnapshot]:
        """
        Generate and persist the snapshot for (period, timestamp).
        
        Returns the snapshot rows ordered by rank. If the snapshot already
        exists it is returned without writing anything. No indices in the
        window gives an empty snapshot, which is not an error.
        
        Raises:
            InvalidArgumentError: Blank period or future timestamp
            StorageError: Gateway failure (retryable by the caller)
        """
        period = require_period(period)
        now = self.clock()
        timestamp = require_past_timestamp(timestamp, now)
        
        try:
            if await self.gateway.snapshot_exists(period, timestamp):
                logger.info(
                    "Leaderboard snapshot already exists, skipping",
                    period=period,
                    ts=timestamp.isoformat(),
                )
                return await self.gateway.list_leaderboard(period, timestamp)
            
            reference_date = timestamp.date()
            since = self.window_start(period, reference_date)
            latest = await self.gateway.latest_popularity_indices(reference_date, since)
            previous = await self._previous_values(period, timestamp)
            
            rows = self._build_rows(period, timestamp, rank_indices(latest), previous, now)
            
            if not await self.gateway.insert_leaderboard_snapshot(rows):
                logger.info(
                    "Leaderboard snapshot written concurrently, skipping",
                    period=period,
                    ts=timestamp.isoformat(),
                )
                return await self.gateway.list_leaderboard(period, timestamp)
            
            stored = await self.gateway.list_leaderboard(period, timestamp)
        except StorageError as e:
            logger.error(
                "Leaderboard snapshot generation failed",
                period=period,
                ts=timestamp.isoformat(),
                error=str(e),
            )
            raise
        
        if self.cache is not None:
            await invalidate_leaderboard(self.cache, period)
        
        logger.info(
            "Leaderboard snapshot generated",
            period=period,
            ts=timestamp.isoformat(),
            window_start=since.isoformat(),
            games=len(stored),
        )
        return stored
    
    async def _previous_values(self, period: str, timestamp: datetime) -> Dict[int, Decimal]:
        """Index values of the most recent earlier snapshot of the period"""
        previous_ts = await self.gateway.latest_snapshot_timestamp(period, before=timestamp)
        if previous_ts is None:
            return {}
        
        rows = await self.gateway.list_leaderboard(period, previous_ts)
        return {r.game_id: r.index_value for r in rows}
    
    @staticmethod
    def _build_rows(
        period: str,
        timestamp: datetime,
        ranked: Sequence[PopularityIndexDaily],
        previous: Dict[int, Decimal],
        created_at: datetime,
    ) -> List[LeaderboardSnapshot]:
        rows = []
        for rank, entry in enumerate(ranked, start=1):
            change_amount, change_rate = index_change(entry.index_value, previous.get(entry.game_id))
            rows.append(
                LeaderboardSnapshot(
                    period=period,
                    ts=timestamp,
                    rank=rank,
                    game_id=entry.game_id,
                    index_value=entry.index_value,
                    change_amount=change_amount,
                    change_rate=change_rate,
                    index_grade=grade_for(entry.index_value),
                    created_at=created_at,
                )
            )
        return rows
