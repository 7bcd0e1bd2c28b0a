"""
Authentication Package

Short-lived session tokens for the voice-agent WebSocket.

Modules:
- session: token issuance, verification and subprotocol extraction
- routes: GET /api/session

The authentication flow:
1. Browser calls GET /api/session and receives a signed token
2. Browser opens /api/voice-agent offering subprotocol access_token.<token>
3. Gateway verifies the token during the upgrade, before any upstream
   connection is opened, and echoes the subprotocol back on accept
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
