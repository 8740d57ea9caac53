"""Runtime configuration loaded from the environment."""

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MIN_INTERVAL_MS = 50


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=1, le=65535)
    cors_origin: str = "*"

    # Sampling
    sample_interval_ms: int = Field(default=1000, ge=MIN_INTERVAL_MS)
    history_points: int = Field(default=60, ge=1)
    heartbeat_interval_ms: int = Field(default=1000, ge=MIN_INTERVAL_MS)
    top_processes: int = Field(default=5, ge=1)
    provider_timeout_s: float = Field(default=5.0, gt=0)
    send_timeout_s: float = Field(default=2.0, gt=0)

    log_level: str = "INFO"

    @property
    def cors_origins(self) -> list[str]:
        """CORS_ORIGIN as a list; accepts a comma-separated value."""
        return [origin.strip() for origin in self.cors_origin.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the command-line entry points."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
