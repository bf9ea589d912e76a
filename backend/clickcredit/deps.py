"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import HTTPException, Request, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.attribution import AttributionService


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: Optional[str] = None

    DATABASE_URL: str = "sqlite:///./clickcredit.db"
    # Leave empty to run with the in-process hot tier only
    REDIS_URL: Optional[str] = "redis://localhost:6379/0"

    # Correlation
    ATTRIBUTION_WINDOW_HOURS: int = 24
    AUTO_ACCEPT_THRESHOLD: float = 0.75
    CONFIDENCE_FLOOR: float = 0.50
    CONTENT_ACCEPT_THRESHOLD: float = 0.80
    CONTENT_SCORE_CEILING: float = 0.90
    MULTI_SIGNAL_BONUS: float = 0.10
    DEPENDENCY_TIMEOUT_SECONDS: float = 0.5

    # Click cache
    HOT_TIER_CAPACITY: int = 100
    CLICK_CACHE_PREFIX: str = "click:v2:"

    # Trainer
    LEARNING_RATE: float = 0.01
    RETRAIN_EVERY: int = 10
    MIN_TRAINING_SAMPLES: int = 10
    MAX_TRAINING_SAMPLES: int = 5000
    LAMBDA_SMOOTHING: float = 0.9

    # Insights
    INSIGHT_RETENTION_DAYS: int = 90
    INSIGHT_MAX_EVENTS: int = 100_000

    BACKGROUND_CONCURRENCY: int = 8

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_attribution_service(request: Request) -> AttributionService:
    """Resolve the service built during app startup."""
    service = getattr(request.app.state, "attribution_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Attribution service not ready")
    return service
