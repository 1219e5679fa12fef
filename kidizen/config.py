"""
Configuration and settings for the Kidizen Science API.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BUCKET = "kidizen-science-images"
DEFAULT_PUBLIC_BASE_URL = "https://storage.googleapis.com"


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="")

    # Entity store (any SQLAlchemy URL; unset means in-memory)
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    # Process-wide secret used to encrypt credentials at rest
    credential_secret: str = Field(
        default="dev-change-this-secret", alias="KIDIZEN_SECRET"
    )
    reset_code_lifetime_minutes: int = Field(default=30)

    # Object storage (S3-compatible)
    storage_bucket: str = Field(default=DEFAULT_BUCKET, alias="KIDIZEN_STORAGE_BUCKET")
    storage_public_base_url: str = Field(
        default=DEFAULT_PUBLIC_BASE_URL, alias="KIDIZEN_STORAGE_PUBLIC_BASE_URL"
    )
    storage_endpoint: Optional[str] = Field(default=None, alias="KIDIZEN_STORAGE_ENDPOINT")
    storage_region: Optional[str] = Field(default=None, alias="KIDIZEN_STORAGE_REGION")
    aws_access_key_id: Optional[str] = Field(default=None, alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[str] = Field(
        default=None, alias="AWS_SECRET_ACCESS_KEY"
    )
    default_profile_photo: str = Field(
        default=(
            f"{DEFAULT_PUBLIC_BASE_URL}/{DEFAULT_BUCKET}/1606709615803_defaultUserPhoto.png"
        ),
        alias="KIDIZEN_DEFAULT_PROFILE_PHOTO",
    )

    # Uploads
    max_image_bytes: int = Field(default=10 * 1024 * 1024, alias="KIDIZEN_MAX_IMAGE_BYTES")
    image_probe_timeout: float = Field(default=10.0)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, alias="KIDIZEN_USE_IN_MEMORY_BACKENDS"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
