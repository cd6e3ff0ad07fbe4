"""
Configuration module for the Graph Proxy Gateway.

This module uses Pydantic Settings to load and validate environment variables
for the upstream API endpoint, Azure AD client credentials, timeouts,
logging and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Everything the gateway needs to build its credentialed upstream client
    and to host the proxy routes is defined here.
    """

    # =========================================================================
    # Upstream API Configuration
    # =========================================================================

    UPSTREAM_BASE_URL: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Versioned upstream endpoint (e.g., https://graph.microsoft.com/v1.0)",
        min_length=1,
    )

    UPSTREAM_SCOPES: str = Field(
        default="https://graph.microsoft.com/.default",
        description="Space-separated scopes requested for upstream access tokens",
    )

    UPSTREAM_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Total timeout for a single upstream call",
        gt=0,
        le=300,
    )

    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Connect timeout for upstream calls",
        gt=0,
        le=60,
    )

    # =========================================================================
    # Azure AD / Entra ID Configuration (client credentials)
    # =========================================================================

    AZURE_TENANT_ID: Optional[str] = Field(
        None,
        description="Azure AD Tenant ID (GUID format)",
    )

    AZURE_CLIENT_ID: Optional[str] = Field(
        None,
        description="Azure AD Application (Client) ID used to call the upstream",
    )

    AZURE_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Azure AD Client Secret for the client credentials flow",
    )

    # =========================================================================
    # Gateway Server Configuration
    # =========================================================================

    GATEWAY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the gateway server",
    )

    GATEWAY_PORT: int = Field(
        default=8080,
        description="Port to bind the gateway server",
        ge=1,
        le=65535,
    )

    DISCONNECT_POLL_SECONDS: float = Field(
        default=0.5,
        description="How often an in-flight proxy call checks whether its caller went away",
        gt=0,
        le=10,
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def upstream_base_url_str(self) -> str:
        """
        Versioned upstream endpoint without trailing slash.

        Returns:
            Upstream URL as string, e.g. https://graph.microsoft.com/v1.0
        """
        return self.UPSTREAM_BASE_URL.rstrip("/")

    @property
    def upstream_scopes_list(self) -> List[str]:
        """Parse UPSTREAM_SCOPES into a list."""
        return [scope for scope in self.UPSTREAM_SCOPES.split() if scope]

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def azure_authority(self) -> str:
        """Azure AD authority URL for the configured tenant."""
        return f"https://login.microsoftonline.com/{self.AZURE_TENANT_ID}"

    @property
    def has_client_credentials(self) -> bool:
        """True when tenant, client id and secret are all configured."""
        return bool(
            self.AZURE_TENANT_ID and self.AZURE_CLIENT_ID and self.AZURE_CLIENT_SECRET
        )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("UPSTREAM_BASE_URL")
    @classmethod
    def validate_upstream_base_url(cls, v: str) -> str:
        """
        Validate that the upstream endpoint is http(s) and carries a version segment.

        Raises:
            ValueError: If the scheme is wrong or there is no path segment to strip
        """
        stripped = v.strip().rstrip("/")

        match = re.match(r"^https?://[^/]+(/.*)?$", stripped, re.IGNORECASE)
        if not match:
            raise ValueError(
                f"Invalid upstream URL: '{v}'. "
                "Expected format: 'https://host/v1.0'"
            )

        if not match.group(1):
            raise ValueError(
                f"Upstream URL '{v}' has no version segment. "
                "Expected format: 'https://host/v1.0'"
            )

        return stripped

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate LOG_LEVEL is a standard logging level name."""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        level = v.strip().upper()
        if level not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return level

    @field_validator("AZURE_TENANT_ID", "AZURE_CLIENT_ID")
    @classmethod
    def validate_guid_format(cls, v: Optional[str]) -> Optional[str]:
        """
        Validate that Azure IDs are in GUID format when provided.

        Raises:
            ValueError: If not a valid GUID format
        """
        if v is None or not v.strip():
            return None

        if not GUID_PATTERN.match(v.strip()):
            raise ValueError(
                f"Invalid GUID format: {v}. "
                "Expected format: xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"
            )

        return v.strip().lower()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Cached so that the settings are loaded only once during the application
    lifecycle.

    Raises:
        ValidationError: If environment variables are invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate configuration settings and return a status report.

    Called during application startup; errors do not stop the service
    but are logged so that a misconfigured upstream is obvious.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    configured = [
        name for name in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET")
        if getattr(settings, name)
    ]
    if configured and not settings.has_client_credentials:
        errors.append(
            "Partial Azure AD configuration: AZURE_TENANT_ID, AZURE_CLIENT_ID "
            "and AZURE_CLIENT_SECRET must be set together"
        )
    elif not configured:
        warnings.append("No Azure AD credentials configured; upstream calls are unauthenticated")

    if not settings.upstream_scopes_list:
        errors.append("UPSTREAM_SCOPES is empty")

    if settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS > settings.UPSTREAM_TIMEOUT_SECONDS:
        warnings.append("UPSTREAM_CONNECT_TIMEOUT_SECONDS exceeds UPSTREAM_TIMEOUT_SECONDS")

    if not settings.upstream_base_url_str.lower().startswith("https://"):
        warnings.append("Upstream URL is not HTTPS; bearer tokens would be sent in clear text")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "upstream_base_url": settings.upstream_base_url_str,
        "log_level": settings.LOG_LEVEL,
    }
