"""
API Configuration Management

Provides centralized configuration handling with environment-aware settings
management, secure secret retrieval, and validation.

Design Considerations:
- Environment-specific configuration profiles
- The token encryption key is mandatory and validated on load, so a
  misconfigured deployment fails at startup instead of storing clear text
- Pipeline timing (delays, cache TTLs, sweep cadence) is configuration,
  not code
"""

import os
from enum import Enum
from typing import Optional

from cryptography.fernet import Fernet
from pydantic_settings import BaseSettings
from pydantic import Field, SecretStr, field_validator, model_validator


class EnvironmentType(str, Enum):
    """Valid environment types for configuration context."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """
    API configuration settings with environment-specific defaults and validation.

    Loaded from environment variables and an optional ``.env`` file.
    """
    # Environment Configuration
    ENVIRONMENT: EnvironmentType = Field(
        default=EnvironmentType.DEVELOPMENT,
        description="Runtime environment context"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level"
    )

    # API Settings
    API_TITLE: str = Field(
        default="Inbox Draft Agent API",
        description="API title for documentation"
    )
    API_DESCRIPTION: str = Field(
        default="Webhook-driven AI reply drafting for Microsoft 365 mailboxes",
        description="API description for documentation"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # Storage
    DATABASE_URL: str = Field(
        default="sqlite:///data/inbox_drafts.db",
        description="SQLAlchemy database URL"
    )
    TOKEN_ENCRYPTION_KEY: SecretStr = Field(
        ...,
        description="Fernet key used to encrypt mailbox OAuth tokens at rest"
    )

    # Microsoft identity platform
    MICROSOFT_CLIENT_ID: Optional[str] = Field(
        default=None,
        description="Azure AD application (client) id"
    )
    MICROSOFT_CLIENT_SECRET: Optional[SecretStr] = Field(
        default=None,
        description="Azure AD client secret"
    )
    MICROSOFT_TENANT: str = Field(
        default="common",
        description="Azure AD tenant used for token refreshes"
    )

    # Language model
    GROQ_API_KEY: Optional[SecretStr] = Field(
        default=None,
        description="Groq API key"
    )
    GROQ_MODEL: str = Field(
        default="llama-3.3-70b-versatile",
        description="Model used for reply generation"
    )
    LLM_MAX_OUTPUT_TOKENS: int = Field(
        default=1500,
        description="Output token budget for a generated reply"
    )
    LLM_TEMPERATURE: float = Field(
        default=0.3,
        description="Sampling temperature for a generated reply"
    )

    # Webhooks and scheduling
    WEBHOOK_BASE_URL: str = Field(
        default="",
        description="Public base URL the provider posts notifications to"
    )
    PROCESSING_DELAY_MIN_SECONDS: float = Field(
        default=45.0,
        description="Lower bound of the randomized processing delay"
    )
    PROCESSING_DELAY_MAX_SECONDS: float = Field(
        default=60.0,
        description="Upper bound of the randomized processing delay"
    )
    HONOR_CLIENT_RESPONSE_DELAY: bool = Field(
        default=False,
        description="Use the client's configured response delay instead of the default window"
    )
    CREATE_CACHE_TTL_SECONDS: int = Field(
        default=600,
        description="Dedup window for new-message notifications"
    )
    DELETE_CACHE_TTL_SECONDS: int = Field(
        default=300,
        description="Dedup window for deletion notifications"
    )
    SWEEP_INTERVAL_SECONDS: int = Field(
        default=60,
        description="Interval of the background cache and timer sweep"
    )
    STALE_TIMER_SECONDS: int = Field(
        default=300,
        description="Age after which a pending timer is considered stuck"
    )
    SUBSCRIPTION_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Lifetime requested for push subscriptions"
    )
    CALENDAR_LOOKAHEAD_DAYS: int = Field(
        default=30,
        description="Days of calendar events included in the prompt"
    )
    BUSINESS_TIMEZONE: str = Field(
        default="America/New_York",
        description="Timezone used to state the current date and time in the prompt"
    )
    INCLUDE_THREAD_HISTORY: bool = Field(
        default=False,
        description="Include earlier messages of the conversation in the prompt"
    )

    # Administration
    ADMIN_API_KEY: Optional[SecretStr] = Field(
        default=None,
        description="Key required in the X-Admin-Key header of administrative endpoints"
    )

    # CORS Settings
    CORS_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed origins for CORS"
    )
    CORS_METHODS: str = Field(
        default="GET,POST,OPTIONS",
        description="Comma-separated list of allowed methods for CORS"
    )

    @field_validator("CORS_ORIGINS")
    @classmethod
    def parse_cors_origins(cls, value: str) -> list:
        """Parse comma-separated CORS origins into list."""
        if value == "*":
            return ["*"]
        return [origin.strip() for origin in value.split(",") if origin.strip()]

    @field_validator("CORS_METHODS")
    @classmethod
    def parse_cors_methods(cls, value: str) -> list:
        """Parse comma-separated CORS methods into list."""
        return [method.strip() for method in value.split(",") if method.strip()]

    @field_validator("TOKEN_ENCRYPTION_KEY")
    @classmethod
    def validate_encryption_key(cls, value: SecretStr) -> SecretStr:
        """Ensure the encryption key is a usable Fernet key."""
        try:
            Fernet(value.get_secret_value().strip().encode("utf-8"))
        except (ValueError, TypeError):
            raise ValueError("TOKEN_ENCRYPTION_KEY must be a urlsafe-base64 encoded 32-byte Fernet key")
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def validate_delay_window(self) -> "APISettings":
        if self.PROCESSING_DELAY_MIN_SECONDS < 0:
            raise ValueError("PROCESSING_DELAY_MIN_SECONDS must not be negative")
        if self.PROCESSING_DELAY_MAX_SECONDS < self.PROCESSING_DELAY_MIN_SECONDS:
            raise ValueError("PROCESSING_DELAY_MAX_SECONDS must be >= PROCESSING_DELAY_MIN_SECONDS")
        return self

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore"
    }


def get_settings() -> APISettings:
    """
    Retrieve validated API settings.

    The encryption key is exported to the process environment so the
    storage layer encrypts with the same key the settings validated.

    Returns:
        Validated API settings object

    Raises:
        ValidationError: If configuration fails validation, including a
            missing or malformed TOKEN_ENCRYPTION_KEY
    """
    settings = APISettings()
    os.environ.setdefault("TOKEN_ENCRYPTION_KEY", settings.TOKEN_ENCRYPTION_KEY.get_secret_value())
    return settings
