"""
Unit Tests - Leaderboard Snapshots
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import DAY, NOW
from popularity_engine.engine.leaderboard import (
    LeaderboardGenerator,
    grade_for,
    index_change,
    rank_indices,
)
from popularity_engine.exceptions import InvalidArgumentError, StorageError
from popularity_engine.schemas import PopularityIndexDaily
from popularity_engine.serving.query_service import PopularityQueryService
from popularity_engine.storage.memory import InMemoryStorageGateway

SNAPSHOT_TS = datetime(2025, 1, 15)


def index(game_id: int, on_date: date, value: str) -> PopularityIndexDaily:
    return PopularityIndexDaily(
        game_id=game_id,
        date=on_date,
        index_value=Decimal(value),
        created_at=NOW,
    )


@pytest.fixture
def generator(gateway, cache, popularity_settings, clock):
    return LeaderboardGenerator(gateway, cache, popularity_settings, clock=clock)


class TestGrades:
    """Tests for grade_for"""
    
    @pytest.mark.parametrize(
        "value, grade",
        [
            ("100", "S"),
            ("90", "S"),
            ("89.9999", "A"),
            ("75", "A"),
            ("60", "B"),
            ("40", "C"),
            ("39.9999", "D"),
            ("0", "D"),
        ],
    )
    def test_thresholds(self, value, grade):
        assert grade_for(Decimal(value)) == grade


class TestRanking:
    """Tests for rank ordering and change computation"""
    
    def test_ties_break_by_game_id(self):
        rows = [index(3, DAY, "50"), index(1, DAY, "50"), index(2, DAY, "70")]
        
        ranked = rank_indices(rows)
        
        assert [r.game_id for r in ranked] == [2, 1, 3]
    
    def test_change_against_previous(self):
        amount, rate = index_change(Decimal("85.5"), Decimal("80"))
        
        assert amount == Decimal("5.5")
        assert rate == Decimal("6.8750")
    
    def test_change_without_previous(self):
        assert index_change(Decimal("85.5"), None) == (None, None)
    
    def test_change_from_zero_has_no_rate(self):
        amount, rate = index_change(Decimal("10"), Decimal("0"))
        
        assert amount == Decimal("10")
        assert rate is None


class TestWindow:
    """Tests for LeaderboardGenerator.window_start"""
    
    def test_daily_uses_reference_date(self, generator):
        assert generator.window_start("daily", DAY) == DAY
    
    def test_weekly_covers_seven_days(self, generator):
        assert generator.window_start("weekly", DAY) == DAY - timedelta(days=6)
    
    def test_monthly_clamps_to_month_end(self, generator):
        assert generator.window_start("monthly", date(2025, 3, 31)) == date(2025, 2, 28)
    
    def test_period_lookup_is_case_insensitive(self, generator):
        assert generator.window_start("Weekly", DAY) == DAY - timedelta(days=6)
    
    def test_unknown_period_uses_reference_date(self, generator):
        assert generator.window_start("season_1", DAY) == DAY


class TestGenerateSnapshot:
    """Tests for LeaderboardGenerator.generate_snapshot"""
    
    @pytest.mark.asyncio
    async def test_ranks_by_index_descending(self, gateway, generator):
        gateway.add_popularity_indices([index(2, DAY, "75.0"), index(1, DAY, "85.5")])
        
        rows = await generator.generate_snapshot("daily", SNAPSHOT_TS)
        
        assert [(r.rank, r.game_id) for r in rows] == [(1, 1), (2, 2)]
        assert rows[0].index_grade == "A"
        assert all(r.period == "daily" and r.ts == SNAPSHOT_TS for r in rows)
        assert all(r.created_at == NOW for r in rows)
    
    @pytest.mark.asyncio
    async def test_ranks_are_dense(self, gateway, generator):
        gateway.add_popularity_indices([
            index(1, DAY, "10"),
            index(2, DAY, "99"),
            index(3, DAY, "10"),
        ])
        
        rows = await generator.generate_snapshot("daily", SNAPSHOT_TS)
        
        assert [r.rank for r in rows] == [1, 2, 3]
        assert [r.game_id for r in rows] == [2, 1, 3]
    
    @pytest.mark.asyncio
    async def test_second_call_keeps_first_ranks(self, gateway, generator):
        gateway.add_popularity_indices([index(1, DAY, "85.5"), index(2, DAY, "75.0")])
        first = await generator.generate_snapshot("daily", SNAPSHOT_TS)
        
        # Reorder the inputs; the frozen snapshot must not change
        gateway.add_popularity_indices([
            index(1, DAY, "10").model_copy(update={"id": gateway.popularity[(1, DAY)].id}),
        ])
        second = await generator.generate_snapshot("daily", SNAPSHOT_TS)
        
        assert [(r.rank, r.game_id, r.index_value) for r in second] == [
            (r.rank, r.game_id, r.index_value) for r in first
        ]
        assert len(gateway.snapshots) == 1
    
    @pytest.mark.asyncio
    async def test_only_reference_date_counts_for_daily(self, gateway, generator):
        gateway.add_popularity_indices([
            index(1, DAY, "20"),
            index(2, DAY - timedelta(days=1), "90"),
            index(3, DAY + timedelta(days=1), "95"),
        ])
        
        rows = await generator.generate_snapshot("daily", SNAPSHOT_TS)
        
        assert [r.game_id for r in rows] == [1]
    
    @pytest.mark.asyncio
    async def test_weekly_uses_latest_index_in_window(self, gateway, generator):
        gateway.add_popularity_indices([
            index(1, DAY - timedelta(days=3), "90"),
            index(1, DAY - timedelta(days=1), "40"),
            index(2, DAY - timedelta(days=5), "60"),
            index(3, DAY - timedelta(days=10), "99"),
        ])
        
        rows = await generator.generate_snapshot("weekly", SNAPSHOT_TS)
        
        assert [(r.game_id, r.index_value) for r in rows] == [
            (2, Decimal("60")),
            (1, Decimal("40")),
        ]
    
    @pytest.mark.asyncio
    async def test_change_versus_previous_snapshot(self, gateway, generator):
        previous_day = DAY - timedelta(days=1)
        gateway.add_popularity_indices([index(1, previous_day, "80"), index(2, previous_day, "0")])
        await generator.generate_snapshot("daily", datetime(2025, 1, 14))
        
        gateway.add_popularity_indices([
            index(1, DAY, "85.5"),
            index(2, DAY, "30"),
            index(3, DAY, "70"),
        ])
        rows = {r.game_id: r for r in await generator.generate_snapshot("daily", SNAPSHOT_TS)}
        
        assert rows[1].change_amount == Decimal("5.5")
        assert rows[1].change_rate == Decimal("6.8750")
        assert rows[2].change_amount == Decimal("30")
        assert rows[2].change_rate is None
        assert rows[3].change_amount is None
        assert rows[3].change_rate is None
    
    @pytest.mark.asyncio
    async def test_no_indices_gives_empty_snapshot(self, gateway, generator):
        rows = await generator.generate_snapshot("daily", SNAPSHOT_TS)
        
        assert rows == []
        assert gateway.snapshots == {}
    
    @pytest.mark.asyncio
    async def test_aware_timestamp_is_stored_as_utc(self, gateway, generator):
        gateway.add_popularity_indices([index(1, DAY, "50")])
        aware = datetime(2025, 1, 15, 9, 0, tzinfo=timezone(timedelta(hours=9)))
        
        rows = await generator.generate_snapshot("daily", aware)
        
        assert rows[0].ts == datetime(2025, 1, 15, 0, 0)
    
    @pytest.mark.parametrize("period", ["", "   ", None])
    @pytest.mark.asyncio
    async def test_blank_period_is_rejected(self, gateway, generator, period):
        with pytest.raises(InvalidArgumentError):
            await generator.generate_snapshot(period, SNAPSHOT_TS)
        
        assert gateway.snapshots == {}
    
    @pytest.mark.asyncio
    async def test_period_longer_than_column_is_rejected(self, gateway, generator):
        gateway.add_popularity_indices([index(1, DAY, "50")])
        
        with pytest.raises(InvalidArgumentError) as exc_info:
            await generator.generate_snapshot("p" * 21, SNAPSHOT_TS)
        
        assert exc_info.value.argument == "period"
        assert gateway.snapshots == {}
    
    @pytest.mark.asyncio
    async def test_period_at_column_width_is_accepted(self, gateway, generator):
        gateway.add_popularity_indices([index(1, DAY, "50")])
        
        rows = await generator.generate_snapshot("  " + "p" * 20 + "  ", SNAPSHOT_TS)
        
        assert [r.period for r in rows] == ["p" * 20]
    
    @pytest.mark.asyncio
    async def test_future_timestamp_is_rejected(self, gateway, generator):
        gateway.add_popularity_indices([index(1, DAY, "50")])
        
        with pytest.raises(InvalidArgumentError):
            await generator.generate_snapshot("daily", NOW + timedelta(seconds=1))
        
        assert gateway.snapshots == {}
    
    @pytest.mark.asyncio
    async def test_invalidates_cached_leaderboard(self, gateway, cache, clock, generator):
        queries = PopularityQueryService(gateway, cache, clock=clock)
        gateway.add_popularity_indices([index(1, DAY, "85.5")])
        
        assert await queries.get_leaderboard("daily") == []
        
        rows = await generator.generate_snapshot("daily", SNAPSHOT_TS)
        
        assert await queries.get_leaderboard("daily") == rows
    
    @pytest.mark.asyncio
    async def test_storage_error_propagates(self, gateway, cache, clock):
        class FailingGateway(InMemoryStorageGateway):
            async def insert_leaderboard_snapshot(self, rows):
                raise StorageError("deadlock detected", operation="insert_leaderboard_snapshot")
        
        failing = FailingGateway().add_popularity_indices([index(1, DAY, "50")])
        generator = LeaderboardGenerator(failing, cache, clock=clock)
        
        with pytest.raises(StorageError):
            await generator.generate_snapshot("daily", SNAPSHOT_TS)


@pytest.mark.asyncio
async def test_memory_gateway_rejects_mixed_snapshot_keys():
    from popularity_engine.schemas import LeaderboardSnapshot
    
    gateway = InMemoryStorageGateway()
    rows = [
        LeaderboardSnapshot(period="daily", ts=SNAPSHOT_TS, rank=1, game_id=1,
                            index_value=Decimal("1"), created_at=NOW),
        LeaderboardSnapshot(period="weekly", ts=SNAPSHOT_TS, rank=2, game_id=2,
                            index_value=Decimal("1"), created_at=NOW),
    ]
    
    with pytest.raises(ValueError):
        await gateway.insert_leaderboard_snapshot(rows)
    assert gateway.snapshots == {}
