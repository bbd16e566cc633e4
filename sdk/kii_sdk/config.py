"""
Configuration for the Kii SDK.

Uses pydantic-settings for environment variable loading. Every setting can
be passed explicitly or read from a KII_* environment variable.
"""

from __future__ import annotations

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings

SITE_URLS = {
    "us": "https://api.kii.com/api",
    "jp": "https://api-jp.kii.com/api",
}


class Site(str, Enum):
    """Backend deployment the application lives in."""

    US = "us"
    JP = "jp"


class KiiSettings(BaseSettings):
    """SDK configuration loaded from environment."""

    # Application credentials
    app_id: str = Field(default="", description="Application ID from the developer console")
    app_key: str = Field(default="", description="Application key from the developer console")

    # Endpoint
    site: Site = Field(default=Site.US, description="Deployment site (us, jp)")
    custom_url: str | None = Field(default=None, description="Overrides the site URL")

    # Transport
    timeout: float = Field(default=30.0, description="Request timeout seconds")
    chunk_size: int = Field(default=64 * 1024, description="Body transfer chunk size in bytes")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (text, json)")

    # Session persistence
    token_path: str | None = Field(default=None, description="File that stores the access token")

    model_config = {"env_prefix": "KII_"}

    @property
    def base_url(self) -> str:
        """Root URL of the REST API."""
        if self.custom_url:
            return self.custom_url.rstrip("/")
        return SITE_URLS[self.site.value]
