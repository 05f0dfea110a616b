"""
Application configuration using environment variables.
"""
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "OutreachHQ API"
    debug: bool = False
    environment: str = "development"

    # Database
    database_url: str = "sqlite:///./outreachhq.db"

    # CORS
    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Rate limiting (applied to endpoints that start a generation run)
    generation_rate_limit: str = "20/minute"

    # Generation service
    generation_service_url: str = "http://localhost:8100"
    generation_api_key: Optional[str] = None
    generation_concurrency: int = 5
    generation_max_retries: int = 2
    generation_backoff_base: float = 1.0  # seconds
    generation_backoff_factor: float = 2.0
    generation_backoff_max: float = 30.0  # seconds
    generation_timeout_seconds: float = 60.0  # per generation call

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
