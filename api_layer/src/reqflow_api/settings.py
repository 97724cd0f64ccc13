"""Settings for the request workflow API."""

from typing import Literal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings for the request workflow API.

    [pydantic.BaseSettings](https://docs.pydantic.dev/latest/concepts/pydantic_settings/) is a popular
    framework for organizing, validating, and reading configuration values from a variety of sources
    including environment variables.

    This class automatically reads from:
    1. Environment variables (production)
    2. .env file (local development)

    Environment variable names are treated case-insensitively, but the canonical
    names used in this project are lowercase (store_backend, log_level).
    """

    service_name: str = "reqflow-api"
    """Service name reported by the health endpoint and in logs."""

    # Storage
    store_backend: Literal["memory", "postgres"] = "memory"
    """Request document store: in-process memory (local runs/tests) or PostgreSQL."""

    domain_db_connection_string: Optional[str] = None
    """PostgreSQL connection string for the request document store (required for postgres backend)."""

    db_pool_min_size: int = 2
    """Minimum asyncpg pool size."""

    db_pool_max_size: int = 10
    """Maximum asyncpg pool size."""

    # Workflow defaults (seed values for the SystemSettings document)
    claim_active_ttl_minutes: int = Field(default=30, ge=1)
    """Lease window for an active claim."""

    claim_hold_ttl_minutes: int = Field(default=24 * 60, ge=1)
    """Lease window for a passive hold."""

    conflict_retry_attempts: int = Field(default=3, ge=1, le=10)
    """Bounded retries for optimistic-concurrency conflicts."""

    # Event dispatch
    event_webhook_url: Optional[str] = None
    """If set, domain events are POSTed to this URL in addition to being logged."""

    event_webhook_timeout_seconds: float = 5.0
    """Timeout for webhook event delivery."""

    # Logging
    log_level: str = "INFO"
    """Minimum log level for the stdout sink."""

    enable_json_logs: bool = False
    """Emit serialized JSON log records instead of the console format."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",  # Load from .env file if it exists (local development)
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra environment variables not defined in the model
        validate_default=True,  # Validate default values
    )
