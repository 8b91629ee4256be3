"""
Unit Tests - Popularity Index Aggregation
"""
import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest
from structlog.testing import CapturingLogger

from conftest import DAY, NOW, TODAY, fact
from popularity_engine.engine import aggregation as aggregation_module
from popularity_engine.engine.aggregation import PopularityAggregator
from popularity_engine.engine.scoring import ScoringPolicy
from popularity_engine.exceptions import InvalidArgumentError, StorageError
from popularity_engine.schemas import PopularityIndexDaily
from popularity_engine.serving.query_service import PopularityQueryService
from popularity_engine.storage.memory import InMemoryStorageGateway


class FailingGateway(InMemoryStorageGateway):
    """Gateway whose index writes always fail"""
    
    async def insert_popularity_index(self, row):
        raise StorageError("connection reset", operation="insert_popularity_index")


class RacingGateway(InMemoryStorageGateway):
    """Gateway where another writer stores the row just before us"""
    
    async def insert_popularity_index(self, row):
        theirs = row.model_copy(update={"index_value": Decimal("12.3400")})
        await super().insert_popularity_index(theirs)
        return False


class SlowReadGateway(InMemoryStorageGateway):
    """Gateway whose first popularity read blocks until released"""
    
    def __init__(self):
        super().__init__()
        self.loading = asyncio.Event()
        self.release = asyncio.Event()
        self._hold = True
    
    async def list_popularity_indices(self, game_id, start_date, end_date):
        rows = await super().list_popularity_indices(game_id, start_date, end_date)
        if self._hold:
            self._hold = False
            self.loading.set()
            await self.release.wait()
        return rows


@pytest.fixture
def aggregator(gateway, cache, clock):
    return PopularityAggregator(gateway, cache, ScoringPolicy(), clock=clock)


class TestComputePopularityIndex:
    """Tests for PopularityAggregator.compute_popularity_index"""
    
    @pytest.mark.asyncio
    async def test_scores_seeded_facts_once(self, gateway, aggregator):
        gateway.add_game_metrics([fact(1, 1, DAY, 1000), fact(1, 2, DAY, 50)])
        
        first = await aggregator.compute_popularity_index(1, DAY)
        second = await aggregator.compute_popularity_index(1, DAY)
        
        assert first.index_value > 0
        assert second.index_value == first.index_value
        assert second.id == first.id
        assert len(gateway.popularity) == 1
    
    @pytest.mark.asyncio
    async def test_existing_row_is_not_recomputed(self, gateway, aggregator):
        gateway.add_game_metrics([fact(1, 1, DAY, 1000)])
        first = await aggregator.compute_popularity_index(1, DAY)
        
        # Late-arriving fact for an already scored day
        gateway.add_game_metrics([fact(1, 2, DAY, 9000)])
        again = await aggregator.compute_popularity_index(1, DAY)
        
        assert again.index_value == first.index_value
    
    @pytest.mark.asyncio
    async def test_row_fields(self, gateway, aggregator):
        gateway.add_game_metrics([fact(2, 3, DAY, 5000)])
        
        row = await aggregator.compute_popularity_index(2, DAY)
        
        assert row.game_id == 2
        assert row.date == DAY
        assert row.created_at == NOW
        assert row.index_value == row.index_value.quantize(Decimal("0.0001"))
    
    @pytest.mark.asyncio
    async def test_no_facts_persists_zero(self, gateway, aggregator):
        row = await aggregator.compute_popularity_index(3, DAY)
        
        assert row.index_value == Decimal("0")
        assert (3, DAY) in gateway.popularity
    
    @pytest.mark.asyncio
    async def test_today_is_accepted(self, aggregator):
        row = await aggregator.compute_popularity_index(1, TODAY)
        
        assert row.date == TODAY
    
    @pytest.mark.asyncio
    async def test_unknown_game_is_rejected(self, gateway, aggregator):
        with pytest.raises(InvalidArgumentError) as exc_info:
            await aggregator.compute_popularity_index(99, DAY)
        
        assert exc_info.value.argument == "game_id"
        assert gateway.popularity == {}
    
    @pytest.mark.parametrize("game_id", [0, -1, True, "1", None])
    @pytest.mark.asyncio
    async def test_invalid_game_id_is_rejected(self, gateway, aggregator, game_id):
        with pytest.raises(InvalidArgumentError):
            await aggregator.compute_popularity_index(game_id, DAY)
        
        assert gateway.popularity == {}
    
    @pytest.mark.asyncio
    async def test_future_date_is_rejected(self, gateway, aggregator):
        with pytest.raises(InvalidArgumentError) as exc_info:
            await aggregator.compute_popularity_index(1, TODAY + timedelta(days=1))
        
        assert exc_info.value.argument == "date"
        assert gateway.popularity == {}
    
    @pytest.mark.asyncio
    async def test_invalid_argument_is_a_value_error(self, aggregator):
        with pytest.raises(ValueError):
            await aggregator.compute_popularity_index(1, date(2099, 1, 1))
    
    @pytest.mark.asyncio
    async def test_storage_error_propagates(self, gateway, cache, clock):
        failing = (
            FailingGateway()
            .add_games(list(gateway.games.values()))
            .add_metrics(list(gateway.metrics.values()))
        )
        aggregator = PopularityAggregator(failing, cache, clock=clock)
        
        with pytest.raises(StorageError) as exc_info:
            await aggregator.compute_popularity_index(1, DAY)
        
        assert exc_info.value.retryable
        assert exc_info.value.operation == "insert_popularity_index"
    
    @pytest.mark.asyncio
    async def test_lost_race_returns_stored_row(self, gateway, cache, clock):
        racing = (
            RacingGateway()
            .add_games(list(gateway.games.values()))
            .add_metrics(list(gateway.metrics.values()))
            .add_game_metrics([fact(1, 1, DAY, 1000)])
        )
        aggregator = PopularityAggregator(racing, cache, clock=clock)
        
        row = await aggregator.compute_popularity_index(1, DAY)
        
        assert row.index_value == Decimal("12.3400")
        assert len(racing.popularity) == 1
    
    @pytest.mark.asyncio
    async def test_invalidates_cached_popularity(self, gateway, cache, clock, aggregator):
        queries = PopularityQueryService(gateway, cache, clock=clock)
        gateway.add_game_metrics([fact(1, 1, DAY, 1000)])
        
        assert await queries.get_game_popularity(1, DAY, DAY) == []
        
        row = await aggregator.compute_popularity_index(1, DAY)
        
        assert await queries.get_game_popularity(1, DAY, DAY) == [row]


class TestComputeDailyIndices:
    """Tests for PopularityAggregator.compute_daily_indices"""
    
    @pytest.mark.asyncio
    async def test_scores_every_game_once(self, gateway, aggregator):
        gateway.add_game_metrics([fact(1, 1, DAY, 1000), fact(2, 1, DAY, 50_000)])
        
        created = await aggregator.compute_daily_indices(DAY)
        again = await aggregator.compute_daily_indices(DAY)
        
        assert created == 3
        assert again == 0
        assert sorted(gateway.popularity) == [(1, DAY), (2, DAY), (3, DAY)]
        assert gateway.popularity[(2, DAY)].index_value > gateway.popularity[(1, DAY)].index_value
    
    @pytest.mark.asyncio
    async def test_skips_games_already_scored(self, gateway, aggregator):
        gateway.add_popularity_indices([
            PopularityIndexDaily(game_id=1, date=DAY, index_value=Decimal("50"), created_at=NOW),
        ])
        
        created = await aggregator.compute_daily_indices(DAY)
        
        assert created == 2
        assert gateway.popularity[(1, DAY)].index_value == Decimal("50")
    
    @pytest.mark.asyncio
    async def test_future_date_is_rejected(self, aggregator):
        with pytest.raises(InvalidArgumentError):
            await aggregator.compute_daily_indices(TODAY + timedelta(days=1))


class TestCacheConsistency:
    """Reads overlapping an index write"""
    
    @pytest.mark.asyncio
    async def test_read_in_flight_during_write_is_not_cached(self, gateway, cache, clock):
        slow = (
            SlowReadGateway()
            .add_games(list(gateway.games.values()))
            .add_metrics(list(gateway.metrics.values()))
            .add_game_metrics([fact(1, 1, DAY, 1000)])
        )
        aggregator = PopularityAggregator(slow, cache, clock=clock)
        queries = PopularityQueryService(slow, cache, clock=clock)
        
        read = asyncio.create_task(queries.get_game_popularity(1, DAY, DAY))
        await slow.loading.wait()
        row = await aggregator.compute_popularity_index(1, DAY)
        slow.release.set()
        
        assert await read == []
        assert await queries.get_game_popularity(1, DAY, DAY) == [row]


class TestBreakdownLogging:
    """The per-metric breakdown is logged at debug level"""
    
    @pytest.mark.asyncio
    async def test_breakdown_is_logged(self, gateway, aggregator, monkeypatch):
        captured = CapturingLogger()
        monkeypatch.setattr(aggregation_module, "logger", captured)
        gateway.add_game_metrics([fact(1, 1, DAY, 1000)])
        
        await aggregator.compute_popularity_index(1, DAY)
        
        breakdowns = [
            call.kwargs for call in captured.calls
            if call.method_name == "debug" and call.args == ("Composite breakdown",)
        ]
        assert len(breakdowns) == 1
        contributions = {c["code"]: c for c in breakdowns[0]["contributions"]}
        assert set(contributions) == {
            "concurrent_users", "forum_posts", "stream_viewers", "social_mentions"
        }
        assert contributions["concurrent_users"]["raw_value"] == 1000.0
        assert contributions["forum_posts"]["score"] == 0.0
