"""Configuration for the Plork ActivityPub federation service."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ActivityPubConfig(BaseSettings):
    """ActivityPub server settings."""

    model_config = SettingsConfigDict(env_prefix="AP_")

    domain: str = Field(
        default="m2np.com",
        description="Domain for actor handles (e.g., @alice@m2np.com)"
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host address for HTTP server"
    )
    port: int = Field(
        default=8090,
        ge=1,
        le=65535,
        description="Port for HTTP server"
    )
    base_url: str = Field(
        default="https://m2np.com",
        description="Public URL of this server (must be HTTPS for federation)"
    )
    outbox_limit: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Number of newest outbox entries rendered in the outbox collection"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL uses HTTPS (required for ActivityPub)."""
        if v and not v.startswith("https://"):
            # Allow http for development
            import warnings
            warnings.warn("ActivityPub base URL should use HTTPS for production")
        return v.rstrip("/")


class FederationConfig(BaseSettings):
    """Inbox policy settings."""

    model_config = SettingsConfigDict(env_prefix="FEDERATION_")

    verify_signatures: bool = Field(
        default=True,
        description="Reject inbox deliveries without a valid HTTP signature"
    )
    auto_accept_follows: bool = Field(
        default=True,
        description="Accept incoming Follow requests immediately instead of leaving them pending"
    )
    emit_accept_activities: bool = Field(
        default=True,
        description="Record an Accept activity in the outbox when a Follow is auto-accepted"
    )


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///plork.db",
        description="SQLAlchemy database URL"
    )


class PlorkConfig(BaseSettings):
    """Main service configuration combining all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-configs
    activitypub: ActivityPubConfig = Field(default_factory=ActivityPubConfig)
    federation: FederationConfig = Field(default_factory=FederationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @classmethod
    def from_yaml(cls, path: str) -> "PlorkConfig":
        """Load configuration from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})


def load_config() -> PlorkConfig:
    """Load configuration from environment and .env file."""
    return PlorkConfig()
