"""Environment-driven configuration for the search authorization service.

Settings are read once at startup (after ``load_dotenv()``) and registered in
the service container as an instance, so every component sees the same
values for the lifetime of the process.

Environment Variables:
    - MASTER_API_KEY: Master credential (required to start the HTTP service)
    - API_KEY_STORE_PATH: Optional SQLite file backing the API key store
    - API_KEY_PREFIX_LENGTH: Length of the displayed secret prefix (default 8)
    - TASK_POLL_INTERVAL: Idle sleep of the task worker in seconds (default 0.05)
    - ERROR_DOCS_URL: Base URL used for the ``link`` field of error payloads
    - CORS_ORIGINS: Comma separated list of allowed origins
    - HOST / PORT: Bind address when running the service module directly
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .errors import ERROR_DOCS_URL

load_dotenv()


class Settings(BaseModel):
    """Process-wide configuration values."""

    master_key: Optional[str] = Field(None, description="Master API key")
    key_store_path: Optional[str] = Field(None, description="SQLite file for API keys")
    key_prefix_length: int = Field(8, ge=4, le=32, description="Displayed secret prefix length")
    task_poll_interval: float = Field(0.05, gt=0, description="Worker idle sleep in seconds")
    error_docs_url: str = Field(ERROR_DOCS_URL, description="Base URL for error links")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    host: str = "0.0.0.0"
    port: int = 7700

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        return cls(
            master_key=os.getenv("MASTER_API_KEY") or None,
            key_store_path=os.getenv("API_KEY_STORE_PATH") or None,
            key_prefix_length=int(os.getenv("API_KEY_PREFIX_LENGTH", "8")),
            task_poll_interval=float(os.getenv("TASK_POLL_INTERVAL", "0.05")),
            error_docs_url=os.getenv("ERROR_DOCS_URL", ERROR_DOCS_URL),
            cors_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "7700")),
        )


class ConfigurationError(Exception):
    """Settings are incomplete for starting the HTTP service."""


def ensure_master_key(settings: Settings) -> Settings:
    """Fail fast when the master key is not configured.

    Raises:
        ConfigurationError: If MASTER_API_KEY is unset or empty
    """
    if not settings.master_key:
        raise ConfigurationError("MASTER_API_KEY must be set to start the service")
    return settings
