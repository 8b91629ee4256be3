"""
Game Popularity Engine
Centralized Configuration Management

Pydantic settings with environment variable support, validation, and type safety.
Each concern owns a settings class with its own env prefix; ``Settings``
aggregates them.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)
    
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="gamecore", alias="database", description="Database name")
    user: str = Field(default="gamecore", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=20, description="Connection pool size")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")
    
    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="REDIS_")
    
    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")
    
    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class CacheSettings(BaseSettings):
    """Read-through cache configuration"""
    
    model_config = SettingsConfigDict(env_prefix="CACHE_")
    
    backend: str = Field(default="memory", description="Cache backend: memory or redis")
    default_ttl: int = Field(default=900, description="Entry time-to-live in seconds")
    max_entries: int = Field(default=10_000, gt=0, description="Size bound of the in-process cache")
    namespace: str = Field(default="popularity", description="Key namespace")
    
    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend value"""
        allowed = ["memory", "redis"]
        if v.lower() not in allowed:
            raise ValueError(f"Cache backend must be one of: {allowed}")
        return v.lower()


class PopularitySettings(BaseSettings):
    """
    Composite index policy.
    
    Weights are looked up by metric code first, then by metric category, then
    fall back to ``default_weight``. Ceilings are the raw values that map to a
    normalized score of 100.
    """
    
    model_config = SettingsConfigDict(env_prefix="POPULARITY_")
    
    metric_weights: Dict[str, float] = Field(
        default={
            "concurrent_users": 0.4,
            "forum_posts": 0.2,
            "social_mentions": 0.15,
            "stream_viewers": 0.15,
            "news_articles": 0.1,
        },
        description="Weight per metric code",
    )
    category_weights: Dict[str, float] = Field(
        default={
            "engagement": 0.4,
            "community": 0.2,
            "social": 0.15,
            "streaming": 0.15,
            "media": 0.1,
        },
        description="Weight per metric category",
    )
    default_weight: float = Field(default=0.1, ge=0, description="Weight for unclassified metrics")
    reference_ceilings: Dict[str, float] = Field(
        default={
            "concurrent_users": 1_000_000,
            "forum_posts": 10_000,
            "social_mentions": 100_000,
            "stream_viewers": 500_000,
            "news_articles": 1_000,
        },
        description="Raw value mapped to a score of 100, per metric code",
    )
    default_ceiling: float = Field(default=100_000, gt=0, description="Ceiling for metrics without one")
    accepted_qualities: List[str] = Field(default=["real"], description="Fact quality tags used for scoring")
    
    # Lookback per leaderboard period, as pandas.DateOffset keyword arguments.
    # Periods not listed here rank on the reference date only.
    period_windows: Dict[str, Dict[str, Any]] = Field(
        default={
            "daily": {},
            "weekly": {"days": 6},
            "monthly": {"months": 1},
            "quarterly": {"months": 3},
            "yearly": {"years": 1},
        },
        description="Leaderboard lookback window per period",
    )
    max_query_range_days: int = Field(default=365, ge=0, description="Longest range served by read queries")

    @field_validator("metric_weights", "category_weights")
    @classmethod
    def validate_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Negative weights would let a higher metric lower the index"""
        negative = [k for k, w in v.items() if w < 0]
        if negative:
            raise ValueError(f"Weights must be non-negative: {negative}")
        return v

    @field_validator("reference_ceilings")
    @classmethod
    def validate_ceilings(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Validate ceilings are positive"""
        invalid = [k for k, c in v.items() if c <= 0]
        if invalid:
            raise ValueError(f"Ceilings must be positive: {invalid}")
        return v


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="")
    
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings
    
    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )
    
    # Application
    app_name: str = Field(default="game-popularity-engine", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    
    # Version
    version: str = Field(default="1.0.0", description="Application version")
    
    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    popularity: PopularitySettings = Field(default_factory=PopularitySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    
    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()
    
    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.
    
    Uses LRU cache to ensure settings are only loaded once.
    
    Returns:
        Settings: Application settings instance
    """
    return Settings()
