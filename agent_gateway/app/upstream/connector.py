"""
Upstream Connector
==================

Opens the gateway's own WebSocket to the upstream voice agent API.

Security Model:
---------------
1. The upstream API key is read from Settings and sent only in the
   Authorization header of the opening handshake
2. Client input reaches the upstream URL only through the allow-listed
   SessionParams fields, so it can never replace or extend the credential
3. There is no retry: a failed handshake surfaces immediately and the
   caller closes the browser connection with a short reason
"""

import logging
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import InvalidHandshake, InvalidStatus, InvalidURI

from ..config import Settings
from ..models import SessionParams
from ..channels import UpstreamChannel

logger = logging.getLogger(__name__)


# ============================================================================
# Exceptions
# ============================================================================

class UpstreamConnectError(Exception):
    """Base exception for upstream connection failures."""
    code = "CONNECTION_FAILED"
    client_reason = "Upstream connection failed"


class UpstreamUnreachableError(UpstreamConnectError):
    """Network, DNS or handshake-timeout failure."""
    client_reason = "Upstream unreachable"


class UpstreamRejectedError(UpstreamConnectError):
    """The upstream declined the handshake (bad key, quota, ...)."""
    client_reason = "Upstream rejected connection"

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


# ============================================================================
# Connector
# ============================================================================

class UpstreamConnector:
    """
    Factory for authenticated upstream connections.

    One connector is built at startup from the frozen Settings and shared by
    every session; it holds no per-session state.
    """

    def __init__(self, settings: Settings):
        self._url = settings.DEEPGRAM_AGENT_URL
        self._api_key = settings.DEEPGRAM_API_KEY
        self._open_timeout = settings.UPSTREAM_OPEN_TIMEOUT_SECONDS
        self._close_timeout = settings.RELAY_CLOSE_TIMEOUT_SECONDS
        self._max_size = settings.UPSTREAM_MAX_MESSAGE_BYTES
        self._max_queue = settings.UPSTREAM_MAX_QUEUE
        self._write_limit = settings.UPSTREAM_WRITE_LIMIT_BYTES

    def build_url(self, params: SessionParams) -> str:
        """Upstream URL with the allow-listed session parameters appended."""
        query = params.as_query()
        if not query:
            return self._url
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{urlencode(query)}"

    async def connect(self, params: SessionParams) -> UpstreamChannel:
        """
        Open a connection to the upstream agent API.

        Args:
            params: Allow-listed client session parameters

        Returns:
            UpstreamChannel ready for relaying

        Raises:
            UpstreamRejectedError: The upstream answered the handshake with a refusal
            UpstreamUnreachableError: The upstream could not be reached in time
        """
        url = self.build_url(params)
        headers = {"Authorization": f"Token {self._api_key.get_secret_value()}"}

        logger.info("Initiating upstream connection", extra={"upstream_url": url})

        try:
            connection = await connect(
                url,
                additional_headers=headers,
                open_timeout=self._open_timeout,
                close_timeout=self._close_timeout,
                max_size=self._max_size,
                max_queue=self._max_queue,
                write_limit=self._write_limit,
            )
        except InvalidStatus as e:
            status_code = e.response.status_code
            logger.error(f"Upstream rejected handshake: HTTP {status_code}")
            raise UpstreamRejectedError(
                f"Upstream rejected handshake with HTTP {status_code}",
                status_code=status_code,
            ) from e
        except InvalidHandshake as e:
            logger.error(f"Upstream handshake failed: {type(e).__name__}")
            raise UpstreamRejectedError("Upstream handshake failed") from e
        except (OSError, TimeoutError, InvalidURI) as e:
            logger.error(f"Failed to reach upstream: {type(e).__name__}: {e}")
            raise UpstreamUnreachableError(f"Failed to reach upstream: {type(e).__name__}") from e

        logger.info("Connected to upstream agent API")
        return UpstreamChannel(connection)
