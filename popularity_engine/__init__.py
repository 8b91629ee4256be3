"""
Game Popularity Engine

Composite popularity indices and ranked leaderboard snapshots for games.
"""
from .exceptions import InvalidArgumentError, PopularityEngineError, StorageError
from .service import PopularityService

__version__ = "1.0.0"

__all__ = [
    "InvalidArgumentError",
    "PopularityEngineError",
    "StorageError",
    "PopularityService",
]
