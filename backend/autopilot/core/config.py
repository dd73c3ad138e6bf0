"""
Autopilot - Configuration
=========================

Process-level settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.

Runtime engine settings (target project, intervals, budgets) are stored
in the database, see ``autopilot.core.schemas.AutoSettings``.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Autopilot"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./autopilot.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Assistant CLI
    # ==========================================================================
    CLAUDE_BINARY: str = "claude"
    CLAUDE_MAX_TURNS: int = 50
    KILL_GRACE_SECONDS: float = 5.0

    # ==========================================================================
    # Cycle Engine
    # ==========================================================================
    EVENT_BUFFER_SIZE: int = 500
    STREAM_QUEUE_SIZE: int = 1000  # per WebSocket client; holds the replayed buffer plus live events
    CYCLE_DELAY_SECONDS: float = 0.1
    BACKOFF_BASE_SECONDS: float = 5 * 60
    BACKOFF_MAX_SECONDS: float = 40 * 60
    TEST_TIMEOUT_SECONDS: float = 5 * 60
    STATE_FILE_NAME: str = "SESSION-STATE.md"

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
