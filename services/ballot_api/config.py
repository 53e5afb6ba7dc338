"""Configuration management for the Ballot API service."""
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "ballot-api"
    API_VERSION: str = "v1"
    DEBUG: bool = False

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 9090

    # Voting window: 17:40 CET = 16:40 UTC
    DEADLINE: datetime = datetime(2026, 2, 12, 16, 40, tzinfo=timezone.utc)

    # Storage configuration
    STORAGE_BACKEND: Literal["memory", "file", "postgres", "redis"] = "file"
    STORAGE_TIMEOUT: float = 5.0
    DATA_FILE: str = "ideas.json"

    # PostgreSQL configuration
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "ballot_db"
    POSTGRES_USER: str = "ballot_user"
    POSTGRES_PASSWORD: str = "ballot_pass"
    POSTGRES_POOL_MIN_SIZE: int = 2
    POSTGRES_POOL_MAX_SIZE: int = 10

    # Redis configuration
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_KEY_PREFIX: str = "ballot:"

    # Rate limiting
    RATE_LIMIT: str = "100/second"

    # CORS settings
    CORS_ORIGINS: list = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list = ["*"]
    CORS_ALLOW_HEADERS: list = ["*"]

    # Directory of static front-end files served at /, if any
    STATIC_DIR: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True

    @validator("DEADLINE")
    def deadline_is_utc(cls, v):
        """Treat a deadline without an offset as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def postgres_dsn(self) -> str:
        """Generate PostgreSQL connection string."""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL."""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()
