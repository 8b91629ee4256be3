"""
Record Schemas

Pydantic models for the records exchanged between the storage gateway, the
engine, and callers. ORM rows convert via ``model_validate`` (from_attributes);
cached values round-trip through ``model_dump(mode="json")``.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Width of the leaderboard period column
PERIOD_MAX_LENGTH = 20


class Record(BaseModel):
    """Base for all engine records"""
    
    model_config = ConfigDict(from_attributes=True, frozen=True)


class Game(Record):
    """Catalog game"""
    game_id: int
    name: str
    genre: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class MetricSource(Record):
    """External metric provider (platform, social network, ...)"""
    source_id: int
    name: str
    note: Optional[str] = None
    created_at: Optional[datetime] = None


class Metric(Record):
    """Measurable quantity published by one source"""
    metric_id: int
    source_id: int
    code: str
    unit: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None


class GameMetricDaily(Record):
    """Raw daily fact for (game, metric, date)"""
    id: Optional[int] = None
    game_id: int
    metric_id: int
    date: date
    value: Decimal
    agg_method: Optional[str] = None
    quality: str = "real"
    created_at: Optional[datetime] = None


class PopularityIndexDaily(Record):
    """Composite index for (game, date)"""
    id: Optional[int] = None
    game_id: int
    date: date
    index_value: Decimal
    created_at: datetime


class LeaderboardSnapshot(Record):
    """One ranked entry of a frozen leaderboard"""
    snapshot_id: Optional[int] = None
    period: str = Field(min_length=1, max_length=PERIOD_MAX_LENGTH)
    ts: datetime
    rank: int = Field(ge=1)
    game_id: int
    index_value: Decimal
    change_amount: Optional[Decimal] = None
    change_rate: Optional[Decimal] = None
    index_grade: Optional[str] = None
    created_at: datetime
