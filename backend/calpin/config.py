from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SECRET_KEY = "dev_secret_key_change_in_production"


class Settings(BaseSettings):
    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    PROJECT_NAME: str = "CalPin"
    VERSION: str = "0.1.0"

    # Security
    SECRET_KEY: str = DEFAULT_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours
    # Only principals whose email ends in one of these domains may use the API
    ALLOWED_EMAIL_DOMAINS: List[str] = ["berkeley.edu"]

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Database
    DATABASE_URL: str = "sqlite:///./calpin.db"
    # Start in degraded (in-memory) mode without probing the database
    FORCE_FALLBACK_STORE: bool = False

    # OpenAI
    OPENAI_API_KEY: str = ""
    CLASSIFIER_ENABLED: bool = True
    MODEL_NAME: str = "gpt-4o-mini"
    TEMPERATURE: float = 0.1
    MAX_TOKENS: int = 1024
    CLASSIFIER_TIMEOUT_S: float = 8.0

    # Listings
    VISIBILITY_WINDOW_HOURS: int = 24
    MINUTES_PER_MILE: int = 15
    PLACEHOLDER_DISTANCE: str = "0.5mi"
    PLACEHOLDER_DURATION: str = "5min"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    # Only enforce secrets in production
    if settings.ENVIRONMENT == "production":
        if not settings.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY is required in production environment")
        if settings.SECRET_KEY == DEFAULT_SECRET_KEY:
            raise ValueError("SECRET_KEY must be changed in production environment")

    return settings
