"""
Input Validation

Compute operations call the ``require_*`` helpers and fail fast with
``InvalidArgumentError``; read operations use ``query_range`` and degrade to an
empty result instead.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import structlog

from popularity_engine.exceptions import InvalidArgumentError
from popularity_engine.schemas import PERIOD_MAX_LENGTH

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_date(value: date) -> date:
    """Drop the time part of datetimes; dates pass through"""
    if isinstance(value, datetime):
        return value.date()
    return value


def normalize_timestamp(ts: datetime) -> datetime:
    """Convert aware timestamps to naive UTC"""
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def is_valid_game_id(game_id) -> bool:
    return isinstance(game_id, int) and not isinstance(game_id, bool) and game_id > 0


def require_game_id(game_id) -> int:
    if not is_valid_game_id(game_id):
        logger.warning("Invalid game id", game_id=game_id)
        raise InvalidArgumentError(f"Invalid game id: {game_id!r}", argument="game_id")
    return game_id


def require_past_date(value: date, today: date, argument: str = "date") -> date:
    if not isinstance(value, date):
        raise InvalidArgumentError(f"{argument} must be a date", argument=argument)
    
    value = as_date(value)
    if value > today:
        logger.warning("Date is in the future", date=value.isoformat(), today=today.isoformat())
        raise InvalidArgumentError(
            f"{argument} {value.isoformat()} is in the future", argument=argument
        )
    return value


def require_past_timestamp(value: datetime, now: datetime) -> datetime:
    if not isinstance(value, datetime):
        raise InvalidArgumentError("timestamp must be a datetime", argument="timestamp")
    
    value = normalize_timestamp(value)
    if value > now:
        logger.warning("Timestamp is in the future", timestamp=value.isoformat())
        raise InvalidArgumentError(
            f"timestamp {value.isoformat()} is in the future", argument="timestamp"
        )
    return value


def require_period(period) -> str:
    if not isinstance(period, str) or not period.strip():
        logger.warning("Empty leaderboard period", period=period)
        raise InvalidArgumentError("period must be a non-empty label", argument="period")
    
    period = period.strip()
    if len(period) > PERIOD_MAX_LENGTH:
        logger.warning("Leaderboard period too long", period=period)
        raise InvalidArgumentError(
            f"period must be at most {PERIOD_MAX_LENGTH} characters", argument="period"
        )
    return period


def query_range(
    start_date: date,
    end_date: date,
    today: date,
    max_days: Optional[int] = None,
) -> Optional[Tuple[date, date]]:
    """
    Effective [start, end] for a read query, or None when it cannot match.
    
    The end is clamped to ``today``; ranges that are inverted, entirely in the
    future, or longer than ``max_days`` yield None.
    """
    start_date, end_date = as_date(start_date), as_date(end_date)
    
    if start_date > end_date:
        return None
    if start_date > today:
        return None
    if max_days is not None and end_date - start_date > timedelta(days=max_days):
        return None
    
    return start_date, min(end_date, today)
