"""
Voice Agent WebSocket Endpoint
==============================

Turns one inbound WebSocket upgrade into a running relay session.

Flow:
    1. Validate the session token from the access_token.<jwt> subprotocol
       (before accept, before any upstream resource is spent)
    2. Read allow-listed session parameters from the query string
    3. Accept, echoing the validated subprotocol
    4. Open the upstream connection with the server-held API key
    5. Run the SessionRelay until either side ends

Failure handling:
    - Bad/missing token: upgrade rejected with 401 (1008 close on servers
      without the denial-response extension); no upstream connection
    - Bad session parameters: upgrade rejected with 400
    - Upstream unreachable/rejected: one JSON error frame, then close 1011
      with a short reason; no retry

Client -> Server:
    Any text (JSON settings/control) or binary (audio) frame, forwarded verbatim

Server -> Client:
    Any upstream frame, forwarded verbatim
    {"type": "Error", "description": "...", "code": "CONNECTION_FAILED"}  # upstream connect failure only
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..auth.session import AuthError, authenticate_subprotocols
from ..channels import ClientChannel, truncate_close_reason
from ..models import SessionParams
from ..upstream.connector import UpstreamConnectError
from .relay import SessionRelay

logger = logging.getLogger(__name__)

# Router instance
realtime_router = APIRouter()

DENIAL_RESPONSE_EXTENSION = "websocket.http.response"


async def reject_upgrade(websocket: WebSocket, status_code: int, error: str, message: str) -> None:
    """
    Refuse a WebSocket upgrade before it is accepted.

    Sends an HTTP error response when the server supports denial responses,
    otherwise a policy-violation close (which the server turns into a 403).
    """
    extensions = websocket.scope.get("extensions") or {}
    if DENIAL_RESPONSE_EXTENSION in extensions:
        await websocket.send_denial_response(
            JSONResponse(status_code=status_code, content={"error": error, "message": message})
        )
    else:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=message)


async def fail_session(websocket: WebSocket, error: UpstreamConnectError) -> None:
    """Tell an accepted client why its session could not start, then close it."""
    payload = {
        "type": "Error",
        "description": "Failed to establish proxy connection",
        "code": error.code,
    }
    try:
        await websocket.send_text(json.dumps(payload))
        await websocket.close(
            code=status.WS_1011_INTERNAL_ERROR,
            reason=truncate_close_reason(error.client_reason),
        )
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.info(f"Client went away before upstream failure was reported: {type(e).__name__}")


@realtime_router.websocket("/api/voice-agent")
async def voice_agent_endpoint(websocket: WebSocket):
    """
    WebSocket proxy to the upstream voice agent API.

    Authentication:
        - Offer subprotocol "access_token.<token>" where <token> comes from
          GET /api/session

    Query Parameters (optional, allow-listed):
        listen_model, think_model, speak_model, language

    Args:
        websocket: WebSocket connection
    """
    settings = websocket.app.state.settings
    connector = websocket.app.state.upstream_connector

    try:
        subprotocol, claims = authenticate_subprotocols(
            websocket.scope.get("subprotocols") or [],
            settings,
        )
    except AuthError as e:
        logger.warning(f"WebSocket auth failed: {e.code}")
        await reject_upgrade(
            websocket,
            status.HTTP_401_UNAUTHORIZED,
            "UNAUTHORIZED",
            "Invalid or missing session token",
        )
        return

    session_id = claims.get("sid", "")

    try:
        params = SessionParams.from_query(websocket.query_params)
    except ValidationError as e:
        logger.warning(
            "Rejected invalid session parameters",
            extra={"session_id": session_id, "fields": [".".join(map(str, err["loc"])) for err in e.errors()]}
        )
        await reject_upgrade(
            websocket,
            status.HTTP_400_BAD_REQUEST,
            "INVALID_SESSION_PARAMS",
            "Invalid session parameters",
        )
        return

    await websocket.accept(subprotocol=subprotocol)
    logger.info("Client connected to /api/voice-agent", extra={"session_id": session_id})

    try:
        upstream = await connector.connect(params)
    except UpstreamConnectError as e:
        logger.error(
            f"Failed to connect upstream: {e}",
            extra={"session_id": session_id, "error_type": type(e).__name__}
        )
        await fail_session(websocket, e)
        return

    relay = SessionRelay(
        ClientChannel(websocket),
        upstream,
        send_timeout=settings.RELAY_SEND_TIMEOUT_SECONDS,
        close_timeout=settings.RELAY_CLOSE_TIMEOUT_SECONDS,
        session_id=session_id,
    )
    await relay.run()
