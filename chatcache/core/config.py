"""Application configuration using pydantic-settings.

Provides type-safe, validated configuration from environment variables
with sensible defaults for development. Every policy constant (TTLs,
windows, caps, limits) is a default here rather than a hard-coded value.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========== Store (Redis) ==========
    redis_url: str = Field(default="", description="Redis connection URL; empty selects the in-memory backend")
    redis_socket_timeout: float = Field(default=2.0, gt=0, le=30)
    redis_connect_timeout: float = Field(default=2.0, gt=0, le=30)

    # ========== Response cache ==========
    response_cache_ttl_seconds: int = Field(default=3600, ge=1)
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_model: str = "mock-llm-v1"
    bulk_delete_batch_size: int = Field(default=100, ge=1, le=10_000)

    # ========== Activity tracking ==========
    live_window_seconds: int = Field(default=1800, ge=1, description="Liveness window (30 minutes)")
    recent_window_seconds: int = Field(default=3600, ge=1)
    today_window_seconds: int = Field(default=86400, ge=1)
    activity_marker_ttl_seconds: int = Field(default=7200, ge=1)
    inactive_marker_ttl_seconds: int = Field(default=1800, ge=1)
    max_sessions_per_user: int = Field(default=10, ge=1)
    stale_threshold_seconds: int = Field(default=7 * 86400, ge=1)
    sweep_interval_seconds: int = Field(default=300, ge=1)

    # ========== Sessions & messages ==========
    session_ttl_seconds: int = Field(default=7200, ge=1)
    max_messages_per_session: int = Field(default=50, ge=1)

    # ========== Rate limiting ==========
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_requests_per_minute: int = Field(default=60, ge=1)
    rate_limit_session_requests_per_minute: int = Field(default=20, ge=1)
    rate_limit_window_seconds: int = Field(default=60, ge=1)

    # ========== Context compression ==========
    context_window_tokens: int = Field(default=4000, ge=1)

    # ========== Application ==========
    app_name: str = "chatcache"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    debug: bool = Field(default=False)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # ========== Computed Properties ==========
    @computed_field
    @property
    def redis_available(self) -> bool:
        """Check if a Redis URL is configured."""
        return bool(self.redis_url.strip())


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
