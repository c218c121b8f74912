from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage settings
    DATABASE_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"

    # Last.fm settings
    LASTFM_API_KEY: str
    LASTFM_API_BASE_URL: str = "https://ws.audioscrobbler.com/2.0/"

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # CHART GENERATION SETTINGS
    # =================================================================
    CHART_LOCK_TIMEOUT_MINUTES: int = 30
    CHART_MAX_BACKLOG_WEEKS: int = 10
    CHART_WEEK_DELAY_SECONDS: float = 0.5
    # Abort once more than this share of members failed to fetch
    CHART_ABORT_FAILED_MEMBER_RATIO: float = 0.5

    RECORDS_RETRY_AFTER_HOURS: float = 1.0
    ENTRY_STATS_CACHE_TTL_SECONDS: int = 3600

    # Worker queue settings
    JOB_QUEUE_BLOCK_SECONDS: int = 5

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
