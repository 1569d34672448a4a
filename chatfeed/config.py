from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required, there is no in-memory fallback
    DATABASE_PATH: str = Field(..., min_length=1)

    # HTTP server
    HOST: str = "0.0.0.0"
    PORT: int = Field(default=3000, ge=1, le=65535)

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Broadcast: events buffered per listener before it is dropped
    LISTENER_BUFFER_SIZE: int = Field(default=64, ge=1)

    # Message policy
    MAX_SENDER_LENGTH: int = Field(default=100, ge=1)
    MAX_CONTENT_LENGTH: int = Field(default=4000, ge=1)

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL for the configured SQLite file."""
        return f"sqlite:///{self.DATABASE_PATH}"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    Raises pydantic.ValidationError when DATABASE_PATH is missing.
    """
    return Settings()
