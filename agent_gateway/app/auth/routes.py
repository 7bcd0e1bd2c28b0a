"""
Session token routes.

GET /api/session hands the browser a short-lived signed token that it then
presents as a WebSocket subprotocol when opening /api/voice-agent.
"""

import logging

from fastapi import APIRouter, HTTPException, Request, status
from jwt.exceptions import PyJWTError

from ..models import ErrorResponse, SessionToken
from .session import issue_session_token

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/api",
    tags=["authentication"],
)


@auth_router.get(
    "/session",
    response_model=SessionToken,
    responses={500: {"model": ErrorResponse}},
)
async def issue_session(request: Request) -> SessionToken:
    """
    Issue a signed session token.

    The token carries no upstream credential; it only proves that this
    gateway minted it within the last few minutes.

    Returns:
        SessionToken with token string, absolute expiry and seconds remaining
    """
    settings = request.app.state.settings

    try:
        return issue_session_token(settings)
    except PyJWTError as e:
        logger.error(f"Failed to generate session token: {type(e).__name__}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "INTERNAL_SERVER_ERROR",
                "message": "Failed to generate session token",
            },
        ) from e
