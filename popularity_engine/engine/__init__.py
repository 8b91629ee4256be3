"""
Popularity Engine Module
"""
from .aggregation import PopularityAggregator
from .leaderboard import LeaderboardGenerator, grade_for, rank_indices
from .scoring import CompositeScore, ScoringPolicy

__all__ = [
    "PopularityAggregator",
    "LeaderboardGenerator",
    "grade_for",
    "rank_indices",
    "CompositeScore",
    "ScoringPolicy",
]
