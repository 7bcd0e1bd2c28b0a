"""
Session Token Module
====================

Issues and validates the short-lived session tokens that authorize a
browser client to open one voice-agent WebSocket.

Tokens are HMAC-signed JWTs carrying only `iat`, `exp` and a random `sid`.
Validation is stateless: there is no server-side session table, so any
worker can verify any token with nothing more than the signing secret.

The token travels in the WebSocket subprotocol list as
`access_token.<jwt>` so it never lands in access logs or browser history.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import jwt
from jwt.exceptions import (
    ExpiredSignatureError,
    InvalidSignatureError,
    InvalidTokenError,
)

from ..config import Settings
from ..models import SessionToken

logger = logging.getLogger(__name__)

TOKEN_SUBPROTOCOL_PREFIX = "access_token."


# =============================================================================
# Exceptions
# =============================================================================

class AuthError(Exception):
    """Base exception for session token failures."""
    code = "UNAUTHORIZED"


class MissingTokenError(AuthError):
    """No access_token subprotocol was offered."""
    code = "MISSING_TOKEN"


class MalformedTokenError(AuthError):
    """The token could not be parsed."""
    code = "MALFORMED_TOKEN"


class BadSignatureError(AuthError):
    """The signature does not verify against the signing secret."""
    code = "BAD_SIGNATURE"


class ExpiredTokenError(AuthError):
    """The token's expiry timestamp has passed."""
    code = "EXPIRED_TOKEN"


# =============================================================================
# Token Creation
# =============================================================================

def issue_session_token(settings: Settings, now: Optional[datetime] = None) -> SessionToken:
    """
    Create a signed session token.

    Args:
        settings: Application settings (signing secret, algorithm, lifetime)
        now: Issue time, defaults to the current UTC time

    Returns:
        SessionToken with the encoded JWT and its expiry
    """
    issued_at = now or datetime.now(timezone.utc)
    lifetime = timedelta(minutes=settings.SESSION_TOKEN_EXPIRY_MINUTES)
    expires_at = issued_at + lifetime

    payload = {
        "sid": uuid.uuid4().hex,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }

    token = jwt.encode(
        payload,
        settings.signing_secret,
        algorithm=settings.SESSION_JWT_ALGORITHM,
    )

    logger.debug(
        "Issued session token",
        extra={"session_id": payload["sid"], "expires_in_seconds": int(lifetime.total_seconds())}
    )

    return SessionToken(
        token=token,
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        expires_in=int(lifetime.total_seconds()),
    )


# =============================================================================
# Token Verification
# =============================================================================

def verify_session_token(
    token: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Verify and decode a session token.

    Expiry is checked before the signature, so a stale token is reported
    as expired whatever state its signature is in.

    Args:
        token: Encoded JWT
        settings: Application settings (signing secret, algorithm)
        now: Reference time, defaults to the current UTC time

    Returns:
        Dictionary containing the decoded claims

    Raises:
        MalformedTokenError: Token cannot be parsed or lacks required claims
        ExpiredTokenError: Current time is past the embedded expiry
        BadSignatureError: Signature does not verify
    """
    if not token:
        raise MalformedTokenError("Empty session token")

    try:
        unverified = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except InvalidTokenError as e:
        # DecodeError for bad encoding, plain InvalidTokenError for bad headers (kid, crit)
        raise MalformedTokenError(f"Unparseable session token: {e}") from e

    exp = unverified.get("exp")
    if not isinstance(exp, int) or isinstance(exp, bool):
        raise MalformedTokenError("Session token has no integer 'exp' claim")

    current = now or datetime.now(timezone.utc)
    if current.timestamp() >= exp:
        raise ExpiredTokenError("Session token has expired")

    try:
        return jwt.decode(
            token,
            settings.signing_secret,
            algorithms=[settings.SESSION_JWT_ALGORITHM],
            options={
                "verify_signature": True,
                # expiry was checked above against the same reference time
                "verify_exp": False,
                "verify_iat": False,
                "require": ["exp", "iat", "sid"],
            },
        )
    except InvalidSignatureError as e:
        raise BadSignatureError("Session token signature mismatch") from e
    except ExpiredSignatureError as e:
        raise ExpiredTokenError("Session token has expired") from e
    except InvalidTokenError as e:
        raise MalformedTokenError(f"Invalid session token: {e}") from e


# =============================================================================
# Helper Functions
# =============================================================================

def authenticate_subprotocols(
    protocols: Iterable[str],
    settings: Settings,
) -> Tuple[str, Dict[str, Any]]:
    """
    Find and validate a token among the offered WebSocket subprotocols.

    Args:
        protocols: Subprotocols from the Sec-WebSocket-Protocol header
        settings: Application settings

    Returns:
        (subprotocol, claims) where subprotocol is the exact value to echo
        back when accepting the connection

    Raises:
        MissingTokenError: No access_token.<jwt> subprotocol was offered
        AuthError: Every offered token failed validation (last error wins)
    """
    last_error: Optional[AuthError] = None

    for proto in protocols:
        if not proto.startswith(TOKEN_SUBPROTOCOL_PREFIX):
            continue
        try:
            claims = verify_session_token(proto[len(TOKEN_SUBPROTOCOL_PREFIX):], settings)
        except AuthError as e:
            last_error = e
            continue
        return proto, claims

    if last_error is not None:
        raise last_error
    raise MissingTokenError("No session token offered")


__all__ = [
    "AuthError",
    "BadSignatureError",
    "ExpiredTokenError",
    "MalformedTokenError",
    "MissingTokenError",
    "TOKEN_SUBPROTOCOL_PREFIX",
    "authenticate_subprotocols",
    "issue_session_token",
    "verify_session_token",
]
