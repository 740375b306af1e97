"""
Application Configuration

Uses Pydantic Settings for type-safe configuration.
"""

from dataclasses import dataclass
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import AliasChoices, Field, field_validator, ConfigDict


@dataclass(frozen=True)
class ProviderCredentials:
    """OAuth client credentials for one provider."""

    client_id: str
    client_secret: str
    redirect_uri: str


class Settings(BaseSettings):
    """Application settings with validation."""

    # === Core ===
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # === Database ===
    database_url: str = Field(
        default="sqlite:///./app.db",
        description="Database connection URL"
    )

    # === CORS ===
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"],
        description="Allowed CORS origins"
    )

    # === Rate Limiting ===
    rate_limit_enabled: bool = Field(default=True)
    auth_rate_limit_requests: int = Field(default=30)
    auth_rate_limit_window_minutes: int = Field(default=60)
    webhook_rate_limit_requests: int = Field(default=100)
    webhook_rate_limit_window_minutes: int = Field(default=1)

    # === OAuth ===
    oauth_redirect_base: str = Field(
        default="http://localhost:3000",
        description="Base URL the providers redirect back to"
    )

    # === Strava ===
    strava_client_id: Optional[str] = Field(default=None)
    strava_client_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("strava_client_secret", "strava_secret")
    )
    strava_redirect_uri: Optional[str] = Field(default=None)
    strava_webhook_verify_token: Optional[str] = Field(default=None)

    # === Garmin ===
    garmin_client_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("garmin_client_id", "garmin_consumer_key")
    )
    garmin_client_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("garmin_client_secret", "garmin_consumer_secret")
    )
    garmin_redirect_uri: Optional[str] = Field(default=None)

    # === Wahoo ===
    wahoo_client_id: Optional[str] = Field(default=None)
    wahoo_client_secret: Optional[str] = Field(default=None)
    wahoo_redirect_uri: Optional[str] = Field(default=None)
    wahoo_webhook_token: Optional[str] = Field(default=None)

    # === Google Calendar ===
    google_calendar_client_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("google_calendar_client_id", "google_client_id")
    )
    google_calendar_client_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("google_calendar_client_secret", "google_client_secret")
    )
    google_calendar_redirect_uri: Optional[str] = Field(default=None)

    # === Credential lifecycle ===
    pending_authorization_ttl_minutes: int = Field(default=15)
    provider_user_id_retry_attempts: int = Field(default=3)
    provider_user_id_retry_base_delay: float = Field(
        default=1.0,
        description="First backoff delay in seconds, doubled per attempt"
    )
    provider_http_timeout_seconds: float = Field(default=15.0)

    # === Maintenance ===
    maintenance_enabled: bool = Field(default=True)
    maintenance_interval_seconds: int = Field(default=6 * 60 * 60)
    maintenance_concurrency: int = Field(default=1)

    # === Security ===
    token_encryption_key: Optional[str] = Field(
        default=None,
        description="Fernet key for encrypting OAuth tokens at rest"
    )
    internal_api_key: Optional[str] = Field(
        default=None,
        description="Shared API key for internal/cron endpoints"
    )

    @field_validator('database_url')
    @classmethod
    def fix_postgres_url(cls, v: str) -> str:
        """Fix Render/Railway postgres:// URL to postgresql://"""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',')]
        return v

    def provider_credentials(self, provider: str) -> Optional[ProviderCredentials]:
        """
        Get OAuth credentials for a provider.

        Args:
            provider: Provider id (strava, garmin, wahoo, google_calendar)

        Returns:
            ProviderCredentials, or None if client id or secret is missing
        """
        client_id = getattr(self, f"{provider}_client_id", None)
        client_secret = getattr(self, f"{provider}_client_secret", None)
        if not client_id or not client_secret:
            return None

        redirect_uri = getattr(self, f"{provider}_redirect_uri", None) or (
            f"{self.oauth_redirect_base.rstrip('/')}/oauth/{provider}/callback"
        )
        return ProviderCredentials(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
        )

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


# Global settings instance
settings = Settings()
