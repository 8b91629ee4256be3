"""
Database Models - Star Schema Design

Dimension Tables:
- DimGame: Catalog games (owned by the catalog subsystem)
- DimMetricSource: External metric providers
- DimMetric: Metric definitions, one source each

Fact Tables:
- FactGameMetricDaily: Raw daily metric values (written by ingestion)
- FactPopularityIndexDaily: Computed composite index per game per day
- FactLeaderboardSnapshot: Frozen ranked leaderboard entries
"""

import datetime as dt
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from popularity_engine.schemas import PERIOD_MAX_LENGTH


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# DIMENSION TABLES
# =============================================================================

class DimGame(Base):
    """Game Dimension Table"""
    __tablename__ = "games"
    
    game_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    genre: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())
    
    popularity: Mapped[List["FactPopularityIndexDaily"]] = relationship(back_populates="game")
    
    __table_args__ = (
        Index("ix_games_name", "name"),
    )


class DimMetricSource(Base):
    """Metric Source Dimension Table"""
    __tablename__ = "metric_sources"
    
    source_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())
    
    metrics: Mapped[List["DimMetric"]] = relationship(back_populates="source")


class DimMetric(Base):
    """
    Metric Dimension Table
    
    ``category`` groups metrics for weighting (engagement, social, ...).
    Inactive metrics are excluded from aggregation.
    """
    __tablename__ = "metrics"
    
    metric_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("metric_sources.source_id"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(50))
    description: Mapped[Optional[str]] = mapped_column(String(200))
    category: Mapped[Optional[str]] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())
    
    source: Mapped["DimMetricSource"] = relationship(back_populates="metrics")
    
    __table_args__ = (
        Index("ix_metrics_source_code", "source_id", "code"),
        Index("ix_metrics_active", "is_active"),
    )


# =============================================================================
# FACT TABLES
# =============================================================================

class FactGameMetricDaily(Base):
    """
    Daily Metric Fact Table
    
    Populated by the ingestion pipeline; read-only for the popularity engine.
    """
    __tablename__ = "game_metric_daily"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.game_id"), nullable=False
    )
    metric_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("metrics.metric_id"), nullable=False
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    agg_method: Mapped[Optional[str]] = mapped_column(String(20))  # max, avg, sum
    quality: Mapped[str] = mapped_column(String(20), default="real", nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())
    
    __table_args__ = (
        UniqueConstraint("game_id", "metric_id", "date", name="uq_game_metric_daily"),
        Index("ix_game_metric_daily_game_date", "game_id", "date"),
    )


class FactPopularityIndexDaily(Base):
    """
    Composite Popularity Index Fact Table
    
    One row per (game, date), created once and never updated.
    """
    __tablename__ = "popularity_index_daily"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.game_id"), nullable=False
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    index_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    
    game: Mapped["DimGame"] = relationship(back_populates="popularity")
    
    __table_args__ = (
        UniqueConstraint("game_id", "date", name="uq_popularity_index_game_date"),
        Index("ix_popularity_index_date", "date"),
    )


class FactLeaderboardSnapshot(Base):
    """
    Leaderboard Snapshot Fact Table
    
    All rows sharing (period, ts) form one snapshot with ranks 1..N.
    """
    __tablename__ = "leaderboard_snapshots"
    
    snapshot_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    period: Mapped[str] = mapped_column(String(PERIOD_MAX_LENGTH), nullable=False)
    ts: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.game_id"), nullable=False
    )
    index_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    change_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4))
    change_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4))
    index_grade: Mapped[Optional[str]] = mapped_column(String(10))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    
    __table_args__ = (
        UniqueConstraint("period", "ts", "game_id", name="uq_leaderboard_period_ts_game"),
        UniqueConstraint("period", "ts", "rank", name="uq_leaderboard_period_ts_rank"),
        Index("ix_leaderboard_period_ts", "period", "ts"),
    )
