"""
Aggregation Engine

Computes the composite popularity index for one (game, date) and persists it
exactly once. Existing rows are never recomputed or overwritten, so facts that
arrive after a day has been scored do not change that day's index.
"""

from datetime import date
from typing import Optional, Tuple

import structlog

from popularity_engine.engine.scoring import ScoringPolicy
from popularity_engine.engine.validation import (
    Clock,
    as_date,
    require_game_id,
    require_past_date,
    utcnow,
)
from popularity_engine.exceptions import InvalidArgumentError, StorageError
from popularity_engine.schemas import PopularityIndexDaily
from popularity_engine.serving.cache import CacheManager
from popularity_engine.serving.keys import invalidate_popularity
from popularity_engine.storage.gateway import StorageGateway

logger = structlog.get_logger(__name__)


class PopularityAggregator:
    """
    Writes PopularityIndexDaily rows.
    
    Example:
        aggregator = PopularityAggregator(gateway, cache)
        row = await aggregator.compute_popularity_index(1, date(2025, 1, 15))
    """
    
    def __init__(
        self,
        gateway: StorageGateway,
        cache: Optional[CacheManager] = None,
        policy: Optional[ScoringPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.gateway = gateway
        self.cache = cache
        self.policy = policy or ScoringPolicy()
        self.clock = clock
    
    async def compute_popularity_index(self, game_id: int, on_date: date) -> PopularityIndexDaily:
        """
        Compute and persist the index for (game_id, on_date).
        
        Returns the stored row; when one already exists it is returned
        unchanged.
        
        Raises:
            InvalidArgumentError: Unknown game or future date
            StorageError: Gateway failure (retryable by the caller)
        """
        row, _ = await self._compute(game_id, on_date)
        return row
    
    async def compute_daily_indices(self, on_date: date) -> int:
        """
        Compute the index of every game for one date.
        
        Returns:
            Number of rows newly created
        """
        on_date = require_past_date(on_date, self.clock().date())
        games = await self.gateway.list_games()
        
        created = 0
        for game in games:
            _, was_created = await self._compute(game.game_id, on_date)
            created += int(was_created)
        
        logger.info(
            "Daily popularity indices computed",
            date=on_date.isoformat(),
            games=len(games),
            created=created,
        )
        return created
    
    async def _compute(self, game_id: int, on_date: date) -> Tuple[PopularityIndexDaily, bool]:
        now = self.clock()
        on_date = require_past_date(on_date, now.date())
        game_id = require_game_id(game_id)
        
        try:
            if await self.gateway.get_game(game_id) is None:
                logger.warning("Unknown game", game_id=game_id)
                raise InvalidArgumentError(f"Game {game_id} does not exist", argument="game_id")
            
            existing = await self.gateway.get_popularity_index(game_id, on_date)
            if existing is not None:
                logger.info(
                    "Popularity index already exists, skipping",
                    game_id=game_id,
                    date=on_date.isoformat(),
                )
                return existing, False
            
            metrics = await self.gateway.list_metrics(active_only=True)
            facts = await self.gateway.list_game_metrics(game_id, on_date, on_date)
            score = self.policy.composite(metrics, facts)
            logger.debug(
                "Composite breakdown",
                game_id=game_id,
                date=on_date.isoformat(),
                contributions=[
                    {"code": c.code, "weight": c.weight, "raw_value": c.raw_value, "score": round(c.score, 4)}
                    for c in score.contributions
                ],
            )
            
            if score.facts_used == 0:
                logger.warning(
                    "No usable metric facts, index is zero",
                    game_id=game_id,
                    date=on_date.isoformat(),
                )
            
            row = PopularityIndexDaily(
                game_id=game_id,
                date=on_date,
                index_value=score.index_value,
                created_at=now,
            )
            
            if not await self.gateway.insert_popularity_index(row):
                # Lost a race with a concurrent writer; theirs is the row of record
                stored = await self.gateway.get_popularity_index(game_id, on_date)
                return stored or row, False
            
            stored = await self.gateway.get_popularity_index(game_id, on_date)
        except StorageError as e:
            logger.error(
                "Popularity index computation failed",
                game_id=game_id,
                date=as_date(on_date).isoformat(),
                error=str(e),
            )
            raise
        
        if self.cache is not None:
            await invalidate_popularity(self.cache, game_id)
        
        logger.info(
            "Popularity index computed",
            game_id=game_id,
            date=on_date.isoformat(),
            index_value=str(row.index_value),
            facts_used=score.facts_used,
        )
        return stored or row, True
