"""Configuration settings for the reverse ETL loader."""

from typing import Optional, Dict, Any
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    # Service Configuration
    service_name: str = "reverse-etl-loader"
    environment: str = "development"
    debug: bool = False

    # Loader
    sync_loader_thread_pool_size: int = 5
    loader_page_size: int = 1000

    # HTTP
    http_timeout: float = 30.0

    # Rate Limiting
    redis_url: Optional[str] = None
    distributed_rate_limit: bool = False

    # Embeddings
    embedding_default_model: str = "text-embedding-3-small"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Destination specific configurations
DESTINATION_CONFIGS: Dict[str, Dict[str, Any]] = {
    "airtable": {
        "name": "Airtable",
        "type": "api_key",
        "api_base_url": "https://api.airtable.com/v0",
        "max_chunk_size": 10,
        "page_size": 100,
        "rate_limit": {
            "calls": 5,
            "window": 1,  # seconds, per base
        }
    },
}
