"""
Upstream Package
================

Authenticated connection to the upstream voice agent API.

Main Components:
----------------
- connector.py: UpstreamConnector and the UpstreamConnectError family

Security Features:
------------------
- API key held server-side and sent only in the handshake header
- Allow-listed session parameters only
"""

from .connector import (
    UpstreamConnectError,
    UpstreamConnector,
    UpstreamRejectedError,
    UpstreamUnreachableError,
)

__all__ = [
    "UpstreamConnectError",
    "UpstreamConnector",
    "UpstreamRejectedError",
    "UpstreamUnreachableError",
]
