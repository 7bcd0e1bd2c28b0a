"""
Realtime Package

This package contains the voice-agent WebSocket endpoint and the session
relay that pairs each browser connection with one upstream connection.

Modules:
- ws: WebSocket router; token check, upstream connect, relay start
- relay: SessionRelay, the two-pump full-duplex frame relay

The realtime package guarantees:
- Per-direction frame ordering, text and binary frames passed through unchanged
- Joint shutdown: when either side ends, the other is closed within a bounded time
- Backpressure: a slow peer suspends its pump instead of growing a queue
"""

from .relay import RelayError, RelayOutcome, SessionRelay
from .ws import realtime_router

__all__ = [
    "RelayError",
    "RelayOutcome",
    "SessionRelay",
    "realtime_router",
]
