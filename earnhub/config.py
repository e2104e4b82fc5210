"""
Environment configuration for the EarnHub API.

Settings are read from environment variables (and a local ``.env`` file when
present) with type validation and defaults suitable for local development.
"""

import secrets
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv(dotenv_path=Path(".") / ".env")


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    APP_NAME: str = "EarnHub API"
    APP_VERSION: str = "1.0.0"
    NODE_ENV: str = "development"
    PORT: int = 5000
    FRONTEND_URL: str = "http://localhost:3000"

    # Persistence
    STORAGE_BACKEND: Literal["mongo", "memory"] = "mongo"
    MONGODB_URI: str = "mongodb://localhost:27017/earnhub"
    MONGODB_DB: Optional[str] = None
    MONGODB_TIMEOUT_MS: int = 5000

    # Security
    JWT_SECRET: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_MINUTES: int = 60 * 24
    BCRYPT_ROUNDS: int = Field(default=12, ge=4, le=31)
    ADMIN_EMAIL: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None

    # Rewards
    REFERRAL_BONUS: Decimal = Decimal("5.00")

    # Rate limiting: 100 requests per 15 minutes per client
    RATE_LIMIT_MAX: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = None

    @field_validator("REFERRAL_BONUS")
    @classmethod
    def _non_negative_bonus(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("REFERRAL_BONUS must not be negative")
        return value

    @model_validator(mode="after")
    def _explicit_secret_in_production(self) -> "Settings":
        if self.is_production and ("JWT_SECRET" not in self.model_fields_set or not self.JWT_SECRET):
            raise ValueError("JWT_SECRET must be set when NODE_ENV=production")
        return self

    @property
    def is_production(self) -> bool:
        return self.NODE_ENV.lower() == "production"

    @property
    def json_logs(self) -> bool:
        if self.LOG_JSON is None:
            return self.is_production
        return self.LOG_JSON

    @property
    def database_name(self) -> str:
        if self.MONGODB_DB:
            return self.MONGODB_DB
        path = urlparse(self.MONGODB_URI).path.lstrip("/")
        return path or "earnhub"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
