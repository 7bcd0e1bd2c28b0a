"""
Configuration module for the Agent Gateway.

This module uses Pydantic Settings to load and validate environment variables
for the upstream agent credential, session token signing, the relay timeouts,
and server/CORS settings.

Environment variables are loaded from .env file or system environment.
The resulting Settings object is frozen: it is built once at startup and
shared read-only by every component that needs a secret.
"""

import secrets
from functools import lru_cache
from typing import Any, List, Optional

from pydantic import Field, PrivateAttr, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_AGENT_URL = "wss://agent.deepgram.com/v1/agent/converse"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Secrets are held as SecretStr so they never show up in repr() or logs;
    call get_secret_value() only at the point of use.
    """

    # =========================================================================
    # Upstream Agent Service
    # =========================================================================

    DEEPGRAM_API_KEY: SecretStr = Field(
        ...,
        description="API key for the upstream voice agent service (never sent to clients)",
    )

    DEEPGRAM_AGENT_URL: str = Field(
        default=DEFAULT_AGENT_URL,
        description="WebSocket URL of the upstream agent endpoint",
    )

    UPSTREAM_OPEN_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for the upstream opening handshake",
        gt=0,
        le=60,
    )

    UPSTREAM_MAX_MESSAGE_BYTES: int = Field(
        default=1024 * 1024,
        description="Largest frame accepted from the upstream service",
        ge=1024,
    )

    UPSTREAM_MAX_QUEUE: int = Field(
        default=32,
        description="Bounded number of inbound upstream frames buffered before reads pause",
        ge=1,
        le=1024,
    )

    UPSTREAM_WRITE_LIMIT_BYTES: int = Field(
        default=64 * 1024,
        description="High-water mark of the upstream write buffer",
        ge=1024,
    )

    # =========================================================================
    # Session Token Configuration
    # =========================================================================

    SESSION_SECRET: Optional[SecretStr] = Field(
        default=None,
        description="Secret for signing session tokens (random per process when unset)",
    )

    SESSION_JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm (HS256, HS384, or HS512)",
    )

    SESSION_TOKEN_EXPIRY_MINUTES: int = Field(
        default=5,
        description="Session token lifetime in minutes",
        ge=1,
        le=60,
    )

    # =========================================================================
    # Relay Configuration
    # =========================================================================

    RELAY_SEND_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="A peer that does not drain a frame within this time is treated as failed",
        gt=0,
    )

    RELAY_CLOSE_TIMEOUT_SECONDS: float = Field(
        default=3.0,
        description="Grace period for the closing handshake and for stopping the sibling pump",
        gt=0,
        le=30,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HOST: str = Field(default="0.0.0.0", description="Host to bind the gateway server")

    PORT: int = Field(default=8081, description="Port to bind the gateway server", ge=1, le=65535)

    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    METADATA_FILE: str = Field(
        default="deepgram.toml",
        description="TOML file whose [meta] table is served by /api/metadata",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    _signing_secret: SecretStr = PrivateAttr()
    _ephemeral_secret: bool = PrivateAttr(default=False)

    def model_post_init(self, __context: Any) -> None:
        if self.SESSION_SECRET is not None and self.SESSION_SECRET.get_secret_value():
            self._signing_secret = self.SESSION_SECRET
        else:
            self._signing_secret = SecretStr(secrets.token_hex(32))
            self._ephemeral_secret = True

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def signing_secret(self) -> str:
        """Key used to sign and verify session tokens."""
        return self._signing_secret.get_secret_value()

    @property
    def signing_secret_is_ephemeral(self) -> bool:
        """True when SESSION_SECRET was not configured and a random one is in use."""
        return self._ephemeral_secret

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("DEEPGRAM_API_KEY")
    @classmethod
    def validate_api_key(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("DEEPGRAM_API_KEY must not be empty")
        return v

    @field_validator("DEEPGRAM_AGENT_URL")
    @classmethod
    def validate_agent_url(cls, v: str) -> str:
        """
        Validate that the upstream URL is a WebSocket URL.

        Raises:
            ValueError: If the scheme is not ws:// or wss://
        """
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"DEEPGRAM_AGENT_URL must use ws:// or wss://, got: {v}")
        return v.rstrip("/")

    @field_validator("SESSION_JWT_ALGORITHM")
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
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If DEEPGRAM_API_KEY is missing or any value is invalid.
    """
    return Settings()
