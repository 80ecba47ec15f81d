"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Record store
    database_url: str = "sqlite:///./movies.db"
    store_retry_attempts: int = 3
    store_retry_backoff: float = 0.1  # seconds, doubled per attempt

    # Cache client (unset redis_url = in-process cache)
    redis_url: Optional[str] = None
    cache_enabled: bool = True
    cache_timeout_seconds: float = 0.5

    # TTL per operation kind (seconds)
    cache_ttl_list: int = 60
    cache_ttl_search: int = 30
    cache_ttl_popular: int = 300
    cache_ttl_recommendations: int = 600
    cache_ttl_get: int = 120

    # Query limits
    max_page_limit: int = 100
    default_page_limit: int = 20
    max_search_length: int = 200
    featured_size: int = 20  # size of the popular / recommendations lists

    # Single-flight
    single_flight_timeout: float = 10.0
    fetch_workers: int = 8

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
