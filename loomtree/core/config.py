"""Configuration management for loomtree."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


DEFAULT_API_BASE_URL = "https://api.openai.com/v1"


class Settings(BaseSettings):
    """Process-level settings loaded from environment variables.

    These seed the defaults of the user-editable settings blob
    (see ``loomtree.core.settings_store``); values saved there win.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    LOOM_ENV: str = Field(default="dev", description="Environment: dev, test, prod")

    # Local durable cache
    LOOM_DATA_DIR: str = Field(
        default="~/.loomtree", description="Directory holding the persisted JSON blobs"
    )

    # Completion endpoint defaults
    LOOM_API_KEY: str = Field(default="", description="API key for the completion endpoint")
    LOOM_API_BASE_URL: str = Field(
        default=DEFAULT_API_BASE_URL, description="Base URL of the completion API"
    )
    LOOM_MODEL: str = Field(default="gpt-3.5-turbo-instruct", description="Completion model")
    LOOM_BATCH_ENDPOINT: str = Field(
        default="",
        description="Optional multiplexed batch endpoint; empty means fan out in-process",
    )
    LOOM_REQUEST_TIMEOUT_SECONDS: float = Field(
        default=120.0, description="Timeout for a single completion request"
    )

    # Store timing
    LOOM_PERSIST_DEBOUNCE_SECONDS: float = Field(
        default=0.5, description="Debounce delay for text-only persistence"
    )
    LOOM_FLUSH_INTERVAL_SECONDS: float = Field(
        default=1 / 60, description="Coalescing window for streamed text flushes"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance
    """
    return Settings()
