"""
Configuration module for the grievance portal authentication core.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider, local token signing, the backend service and the
client session library.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Backend settings loaded from environment variables.

    Identity provider access, local token signing, user directory seeding
    and server options are defined here.
    """

    # =========================================================================
    # Identity Provider (Supabase / GoTrue)
    # =========================================================================

    SUPABASE_URL: HttpUrl = Field(
        ...,
        description="Identity provider project URL (e.g., https://xyz.supabase.co)",
    )

    SUPABASE_ANON_KEY: str = Field(
        ...,
        description="Identity provider API key sent as the 'apikey' header",
        min_length=1,
    )

    PROVIDER_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for identity provider HTTP calls",
        gt=0,
        le=60,
    )

    # =========================================================================
    # Local Token Configuration
    # =========================================================================

    LOCAL_TOKEN_SECRET: str = Field(
        ...,
        description="Secret key for signing local tokens (must be cryptographically secure)",
        min_length=32,
    )

    LOCAL_TOKEN_ALGORITHM: str = Field(
        default="HS256",
        description="HMAC algorithm used when RS256 is disabled",
    )

    LOCAL_TOKEN_ISSUER: str = Field(
        default="grievance-portal",
        description="Value of the 'iss' claim on minted local tokens",
    )

    USE_RS256_JWT: bool = Field(
        default=False,
        description="Sign local tokens with RS256 instead of the HMAC secret",
    )

    JWT_PRIVATE_KEY: Optional[str] = Field(
        None,
        description="PEM private key (required when USE_RS256_JWT is set)",
    )

    JWT_PUBLIC_KEY: Optional[str] = Field(
        None,
        description="PEM public key (required when USE_RS256_JWT is set)",
    )

    # =========================================================================
    # Service Configuration
    # =========================================================================

    USER_SEED_FILE: Optional[str] = Field(
        None,
        description="JSON file with {petitioners, officials, admins} records loaded at startup",
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level",
    )

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    PORT: int = Field(default=5000, description="Port to bind the server", ge=1, le=65535)

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
    def supabase_url_str(self) -> str:
        """Provider URL as string without trailing slash."""
        return str(self.SUPABASE_URL).rstrip("/")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("LOCAL_TOKEN_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """
        Validate JWT algorithm is one of the supported HMAC algorithms.

        Raises:
            ValueError: If algorithm is not supported
        """
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return level


class ClientSettings(BaseSettings):
    """
    Settings for the client session library.

    The backend origin is fixed per deployment; paths handed to the
    authenticated request pipeline are resolved against it.
    """

    API_BASE_URL: str = Field(
        default="https://theervu-kaanal.onrender.com",
        description="Backend origin used for login, refresh and API calls",
    )

    SUPABASE_URL: str = Field(
        default="",
        description="Identity provider project URL",
    )

    SUPABASE_ANON_KEY: str = Field(
        default="",
        description="Identity provider public API key",
    )

    SESSION_FILE: Optional[str] = Field(
        None,
        description="Path of the durable session file (in-memory store when unset)",
    )

    EXPIRY_WARNING_SECONDS: int = Field(
        default=300,
        description="Warn the user when the local token has less than this left",
        ge=0,
    )

    EXPIRY_CHECK_INTERVAL_SECONDS: float = Field(
        default=60.0,
        description="Period of the background expiry monitor",
        gt=0,
    )

    REQUEST_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for backend HTTP calls",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def api_base_url_str(self) -> str:
        return self.API_BASE_URL.rstrip("/")

    @field_validator("API_BASE_URL")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"API_BASE_URL must be an absolute http(s) URL, got: {v}")
        return v


# =============================================================================
# Settings Singletons
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


@lru_cache()
def get_client_settings() -> ClientSettings:
    """Get or create a singleton ClientSettings instance."""
    return ClientSettings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Optional[Settings] = None) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This can be called during application startup to ensure all required
    configuration is present and valid.

    Example:
        >>> status = validate_configuration()
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    settings = settings or get_settings()
    errors = []
    warnings = []

    if settings.USE_RS256_JWT:
        if not settings.JWT_PRIVATE_KEY:
            errors.append("USE_RS256_JWT is set but JWT_PRIVATE_KEY is missing")
        if not settings.JWT_PUBLIC_KEY:
            errors.append("USE_RS256_JWT is set but JWT_PUBLIC_KEY is missing")

    if not settings.USER_SEED_FILE:
        warnings.append("USER_SEED_FILE is not set; user directories start empty")

    if not settings.allowed_origins_list:
        warnings.append("ALLOWED_ORIGINS is not set; CORS is disabled")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "issuer": settings.LOCAL_TOKEN_ISSUER,
        "algorithm": "RS256" if settings.USE_RS256_JWT else settings.LOCAL_TOKEN_ALGORITHM,
    }
