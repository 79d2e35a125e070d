from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False

    # Storage settings
    DATABASE_URL: str = "postgresql://localhost:5432/syncwatch"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Auth settings (bearer JWTs are issued by the identity provider)
    JWT_SECRET: str | None = None
    JWT_AUDIENCE: str = "authenticated"

    ENCRYPTION_KEY: str | None = None

    # Provider gateway used by the sync API client
    SYNC_API_BASE_URL: str = "http://localhost:9000"
    SYNC_API_TOKEN: str | None = None
    CALENDAR_WEBHOOK_URL: str = "http://localhost:8000/webhooks/calendar"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # RATE LIMITING
    # =================================================================
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_FAIL_OPEN: bool = True
    MANUAL_SYNC_LIMIT_PER_WINDOW: int = 1
    MANUAL_SYNC_WINDOW_SECONDS: int = 60

    # =================================================================
    # SYNC ORCHESTRATION
    # =================================================================
    SYNC_TICK_INTERVAL_SECONDS: int = 60
    SYNC_MAX_CONCURRENCY: int = 10
    SYNC_JOB_TIMEOUT_SECONDS: float = 120.0
    TOKEN_MONITOR_INTERVAL_MINUTES: int = 60
    TOKEN_REFRESH_INTERVAL_HOURS: int = 6
    WEBHOOK_RENEWAL_INTERVAL_MINUTES: int = 60

    # Cross-process integration lease (Redis SET NX PX)
    SYNC_LEASE_TTL_SECONDS: float = 300.0
    SYNC_LEASE_ACQUIRE_TIMEOUT_SECONDS: float = 150.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def redis_host(self) -> str | None:
        """Host portion of REDIS_URL, used in readiness output."""
        try:
            return urlparse(self.REDIS_URL).hostname
        except Exception:
            return None

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

    def get_rate_limits(self) -> dict:
        """Manual sync rate limit (per user, across integrations)."""
        return {
            "manual_sync_limit": self.MANUAL_SYNC_LIMIT_PER_WINDOW,
            "manual_sync_window_seconds": self.MANUAL_SYNC_WINDOW_SECONDS,
        }


settings = Settings()
