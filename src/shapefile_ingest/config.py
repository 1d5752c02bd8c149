"""Settings loaded from environment variables (prefix ``SHAPEFILE_INGEST_``)."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="SHAPEFILE_INGEST_", env_file=".env", extra="ignore")

    # Component storage
    storage_dir: Path = Path("uploads")
    max_component_bytes: int = 50 * 1024 * 1024

    # Destination
    duckdb_path: Path = Path("ingest.duckdb")

    # Upload pass
    batch_size: int = 1000
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Parse pass
    dbf_encoding: str = "utf-8"
    preview_size: int = 5

    recent_limit: int = 10
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
