"""Environment-based configuration for DeepImg."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from DEEPIMG_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DEEPIMG_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication for this service (None = disabled)
    api_key: str | None = None

    # Hugging Face Inference API
    hf_token: str | None = None
    default_model: str = "openai/clip-vit-base-patch32"
    request_timeout: float = Field(default=60.0, gt=0)

    # Concurrency (None = unbounded fan-out)
    max_concurrent: int | None = Field(default=None, ge=1)
    fanout_workers: int = Field(default=32, ge=1)
    queue_timeout: float | None = Field(default=None, gt=0)

    # Intake limits
    max_file_size: int = Field(default=5 * 1024 * 1024, ge=1)
    oversize_notice_ms: int = Field(default=4000, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
