"""
Data Models Module

This module defines Pydantic models for request/response validation
and data serialization throughout the gateway service.

Models are organized by functional area:
- Session token models (issued credential)
- Session parameter models (allow-listed values forwarded upstream)
- Health and error models
"""

import logging
from datetime import datetime
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


# ============================================================================
# Session Token Models
# ============================================================================

class SessionToken(BaseModel):
    """Response model for GET /api/session."""
    token: str = Field(..., description="Signed session token (opaque to the client)")
    expires_at: datetime = Field(..., description="Absolute expiry timestamp (UTC)")
    expires_in: int = Field(..., description="Seconds until the token expires")


# ============================================================================
# Session Parameter Models
# ============================================================================

SESSION_PARAM_PATTERN = r"^[A-Za-z0-9._:\-]{1,64}$"


class SessionParams(BaseModel):
    """
    Client-chosen, non-secret session parameters forwarded to the upstream.

    Only the fields declared here ever reach the upstream URL. Anything else
    the client puts on the upgrade request is dropped.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    listen_model: Optional[str] = Field(None, pattern=SESSION_PARAM_PATTERN)
    think_model: Optional[str] = Field(None, pattern=SESSION_PARAM_PATTERN)
    speak_model: Optional[str] = Field(None, pattern=SESSION_PARAM_PATTERN)
    language: Optional[str] = Field(None, pattern=SESSION_PARAM_PATTERN)

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> "SessionParams":
        """
        Build session parameters from the upgrade request's query string.

        Raises:
            pydantic.ValidationError: If an allow-listed value is malformed
        """
        allowed = set(cls.model_fields)
        dropped = sorted(key for key in query if key not in allowed)
        if dropped:
            logger.warning(
                "Dropping session parameters not on the allow-list",
                extra={"dropped_params": dropped}
            )
        return cls.model_validate({key: query[key] for key in query if key in allowed})

    def as_query(self) -> Dict[str, str]:
        """Return the parameters that were actually set, ready for urlencode."""
        return self.model_dump(exclude_none=True)


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
