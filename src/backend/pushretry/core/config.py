"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Notification Retry Service"
    debug: bool = False
    environment: str = "development"
    port: int = 8000

    # Database - the retry queue is persisted here between restarts
    database_url: str = "sqlite+aiosqlite:///./retry_queue.db"
    database_auto_create: bool = True
    retry_persistence_enabled: bool = True

    @field_validator("database_url", mode="before")
    @classmethod
    def assemble_db_url(cls, v: str) -> str:
        """Convert standard postgres:// URL to asyncpg format."""
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    # Retry defaults (used until a configuration is persisted)
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0          # seconds
    retry_max_delay: float = 16.0             # seconds
    retry_backoff_factor: float = 2.0
    retry_jitter_type: str = "FULL"           # NONE, FULL, EQUAL, DECORRELATED
    retry_circuit_breaker_threshold: int = 5
    retry_circuit_breaker_reset_timeout: float = 30.0  # seconds

    # Queue processor
    retry_autostart: bool = True
    retry_processing_interval: float = 5.0    # seconds between drain cycles
    retry_delivery_timeout: float = 10.0      # per-attempt timeout in seconds
    retry_max_concurrency: int = 1            # 1 = sequential drain

    # Admin surface - empty = no key required
    admin_api_key: str = ""

    # Logging
    log_level: str = "INFO"

    # Metrics
    metrics_enabled: bool = True

    # Push gateway
    vapid_private_key: str = ""         # Empty = push disabled
    vapid_public_key: str = ""
    vapid_mailto: str = "mailto:alerts@example.com"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
