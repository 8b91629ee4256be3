"""
Test Suite Configuration
"""
from datetime import date, datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from popularity_engine.config import PopularitySettings, Settings
from popularity_engine.database.connection import create_session_factory
from popularity_engine.database.models import (
    Base,
    DimGame,
    DimMetric,
    DimMetricSource,
    FactGameMetricDaily,
)
from popularity_engine.schemas import Game, GameMetricDaily, Metric, MetricSource
from popularity_engine.serving.cache import CacheManager, MemoryCache
from popularity_engine.storage.memory import InMemoryStorageGateway
from popularity_engine.storage.sql import SqlStorageGateway

NOW = datetime(2025, 1, 20, 12, 0, 0)
TODAY = NOW.date()
DAY = date(2025, 1, 15)


class FakeTimer:
    """Monotonic clock for cache expiry tests"""
    
    def __init__(self, start: float = 1000.0):
        self.now = start
    
    def __call__(self) -> float:
        return self.now
    
    def advance(self, seconds: float) -> None:
        self.now += seconds


GAMES = [
    Game(game_id=1, name="Apex Legends", genre="Shooter"),
    Game(game_id=2, name="Baldur's Gate 3", genre="RPG"),
    Game(game_id=3, name="Counter-Strike 2", genre="Shooter"),
]

SOURCES = [
    MetricSource(source_id=1, name="Steam"),
    MetricSource(source_id=2, name="Twitch", note="Live streaming"),
]

METRICS = [
    Metric(metric_id=1, source_id=1, code="concurrent_users", unit="users", category="engagement"),
    Metric(metric_id=2, source_id=1, code="forum_posts", unit="posts", category="community"),
    Metric(metric_id=3, source_id=2, code="stream_viewers", unit="viewers", category="streaming"),
    Metric(metric_id=4, source_id=2, code="social_mentions", unit="mentions", category="social"),
    Metric(metric_id=5, source_id=2, code="legacy_rank", category="media", is_active=False),
]


def fact(game_id: int, metric_id: int, on_date: date, value, quality: str = "real") -> GameMetricDaily:
    return GameMetricDaily(
        game_id=game_id,
        metric_id=metric_id,
        date=on_date,
        value=Decimal(str(value)),
        agg_method="max",
        quality=quality,
    )


@pytest.fixture
def clock():
    """Fixed engine clock"""
    return lambda: NOW


@pytest.fixture
def popularity_settings() -> PopularitySettings:
    return PopularitySettings()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def cache(timer) -> CacheManager:
    return CacheManager(MemoryCache(clock=timer), namespace="test", default_ttl=900)


@pytest.fixture
def gateway() -> InMemoryStorageGateway:
    """Gateway seeded with games, sources and metrics (no facts)"""
    return (
        InMemoryStorageGateway()
        .add_games(GAMES)
        .add_metric_sources(SOURCES)
        .add_metrics(METRICS)
    )


@pytest_asyncio.fixture
async def sql_engine():
    """In-memory SQLite engine with the schema created"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    yield engine
    
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_gateway(sql_engine) -> SqlStorageGateway:
    """SQL gateway seeded with the same reference data as ``gateway``"""
    session_factory = create_session_factory(sql_engine)
    
    async with session_factory() as session, session.begin():
        session.add_all([DimGame(**g.model_dump(exclude={"created_at"})) for g in GAMES])
        session.add_all([DimMetricSource(**s.model_dump(exclude={"created_at"})) for s in SOURCES])
    async with session_factory() as session, session.begin():
        session.add_all([DimMetric(**m.model_dump(exclude={"created_at"})) for m in METRICS])
    
    return SqlStorageGateway(sql_engine)


async def seed_sql_facts(engine, facts) -> None:
    session_factory = create_session_factory(engine)
    async with session_factory() as session, session.begin():
        session.add_all([
            FactGameMetricDaily(**f.model_dump(exclude={"id", "created_at"}))
            for f in facts
        ])
