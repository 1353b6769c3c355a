"""Configuration management for marketplace order ingestion.

Uses pydantic-settings to load configuration from environment variables
with validation and type coercion.
"""

from pathlib import Path
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DEFAULT_INVOICE_REFERENCE_PREFIX, DEFAULT_MAX_CONCURRENCY


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_path: Path = Field(
        default=Path("data/orders.db"),
        description="SQLite database file path"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_file: Path = Field(
        default=Path("logs/ingest.log"),
        description="Log file path"
    )

    # Ingestion behaviour
    max_concurrency: int = Field(
        default=DEFAULT_MAX_CONCURRENCY,
        ge=1,
        le=100,
        description="Number of orders processed concurrently within a batch"
    )
    batch_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Cancel a batch that runs longer than this many seconds"
    )
    skip_existing: bool = Field(
        default=False,
        description="If true, never touch orders that are already stored"
    )
    update_existing: bool = Field(
        default=True,
        description="If true, overwrite stored orders whose tracked fields changed"
    )
    create_invoices: bool = Field(
        default=True,
        description="If true, push eligible orders to the accounting system"
    )
    dry_run: bool = Field(
        default=False,
        description="If true, report decisions without writing anything"
    )

    # Xero Configuration (invoice sync is disabled unless all three are set)
    xero_client_id: Optional[str] = Field(
        default=None,
        description="Xero OAuth2 client ID"
    )
    xero_client_secret: Optional[str] = Field(
        default=None,
        description="Xero OAuth2 client secret"
    )
    xero_tenant_id: Optional[str] = Field(
        default=None,
        description="Xero tenant (organization) ID"
    )
    xero_access_token: Optional[str] = Field(
        default=None,
        description="Xero OAuth2 access token (managed automatically)"
    )
    xero_refresh_token: Optional[str] = Field(
        default=None,
        description="Xero OAuth2 refresh token (managed automatically)"
    )
    invoice_reference_prefix: str = Field(
        default=DEFAULT_INVOICE_REFERENCE_PREFIX,
        description="Prefix for the invoice reference built from the marketplace order ID"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        v = v.upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v

    @property
    def xero_enabled(self) -> bool:
        """Whether enough Xero credentials are configured to push invoices."""
        return bool(self.xero_client_id and self.xero_client_secret and self.xero_tenant_id)


def get_settings() -> Settings:
    """Get application settings.

    Returns:
        Settings: Application settings loaded from environment
    """
    return Settings()
