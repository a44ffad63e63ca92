"""
app_config.py - Runtime settings for the DB Console API.

Every value can be overridden with an environment variable prefixed
DBCONSOLE_, e.g. DBCONSOLE_CONNECT_TIMEOUT=5.
"""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="DBCONSOLE_")

    # Database connections
    connect_timeout: int = Field(default=10, ge=1, description="Seconds allowed to open a connection")
    fanout_workers: int = Field(default=8, ge=1, description="Max concurrent per-database connections")
    mysql_default_port: int = 3306
    postgres_default_port: int = 5432

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = ["*"]

    # Logging
    log_level: str = "info"


@lru_cache
def get_settings() -> Settings:
    return Settings()
