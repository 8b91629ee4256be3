"""
Game Popularity Engine
Configuration Module
"""
from .settings import (
    CacheSettings,
    DatabaseSettings,
    PopularitySettings,
    RedisSettings,
    Settings,
    get_settings,
)

__all__ = [
    "CacheSettings",
    "DatabaseSettings",
    "PopularitySettings",
    "RedisSettings",
    "Settings",
    "get_settings",
]
