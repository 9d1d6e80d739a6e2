"""Configuration management using pydantic-settings."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # GCP settings (required, Firestore holds the file records)
    gcp_project_id: str

    # Image providers. An empty key disables the provider.
    gemini_api_key: str = ""
    seedream_api_key: str = ""
    seedream_api_base_url: str = "https://ark.ap-southeast.bytepluses.com/api/v3"

    # Provider call limits
    gemini_timeout_seconds: float = 120.0
    seedream_timeout_seconds: float = 60.0
    image_download_timeout_seconds: float = 30.0
    provider_retries: int = 3
    provider_concurrency: int = 2
    resize_cache_capacity: int = 100

    # Storage
    images_dir: str = "data/images"

    # Coordinator settings
    batch_size: int = 4
    api_base_url: str = "http://localhost:8000"

    # Application settings
    app_name: str = "toonstudio"

    # Server settings
    backend_host: str = "localhost"
    backend_port: int = 8000
    frontend_port: int = 3000


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
