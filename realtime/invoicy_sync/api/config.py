"""
Configuration for the dashboard API.

Uses pydantic-settings for environment variable loading. Engine
settings (feed, REST, buffers) live in ..config.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Dashboard API configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="API bind host")
    port: int = Field(default=8080, description="API bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # Upload limits
    max_upload_files: int = Field(default=20, description="Max documents per upload request")

    model_config = {"env_prefix": "DASHBOARD_"}
