"""
Configuration management using Pydantic Settings
"""
from pydantic_settings import BaseSettings
from typing import Dict, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "sqlite:///./quiz_engine.db"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_KEY_PREFIX: str = "quiz_engine:"

    # Backends: "redis" for shared deployments, "memory" for a single process
    STORE_BACKEND: str = "redis"
    EVENT_BACKEND: str = "redis"

    # Application
    APP_NAME: str = "Quiz Answer Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Scoring
    BASE_POINTS: Dict[str, int] = {"easy": 100, "medium": 150, "hard": 200}
    SPEED_BONUS: Dict[str, int] = {"easy": 30, "medium": 40, "hard": 50}
    STREAK_BONUS: Dict[int, int] = {4: 15, 5: 25, 6: 35, 7: 50}
    SPEED_BONUS_THRESHOLD_MS: int = 5000
    STREAK_MIN: int = 4
    STREAK_CAP: int = 7
    RETRY_PENALTY: float = 0.5
    DEFAULT_DIFFICULTY: str = "medium"

    # Attempt policy
    MAX_ATTEMPTS: int = 2
    MAX_RESPONSE_TIME_MS: int = 30000
    TRANSACTION_MAX_RETRIES: int = 25

    # Reconciliation
    SYNC_LOCK_TTL: int = 120  # seconds
    SYNC_LOCK_RENEW_INTERVAL: float = 45.0  # seconds
    SYNC_BARRIER_TIMEOUT: float = 2.0  # seconds
    SYNC_WORKERS: int = 4
    SYNC_LOCKED_RETRIES: int = 5
    SYNC_RETRY_BACKOFF: float = 1.0  # seconds, doubled per retry
    PERIODIC_SYNC_INTERVAL: float = 60.0  # seconds, 0 disables the sweep

    # Racing mode
    TOP_FINISHER_COUNT: int = 3

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
