"""
Frame channels for the session relay.

The relay only ever needs four operations on each side of a session:
receive a frame, send a frame, close gracefully, and force-close. This
module adapts the two concrete WebSocket types to that shape:

- ClientChannel wraps the browser's Starlette WebSocket
- UpstreamChannel wraps the websockets client connection to the agent API

Frames are `str` for text and `bytes` for binary, so the frame type is
preserved end to end without the relay looking at the payload.
"""

import logging
from typing import Protocol, Union

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]

# RFC 6455 codes that must never be sent in a close frame
RESERVED_CLOSE_CODES = frozenset({1004, 1005, 1006, 1015})

# Close reasons are limited to 123 bytes of UTF-8
MAX_CLOSE_REASON_BYTES = 123


def get_safe_close_code(code: int) -> int:
    """Return a sendable close code, translating reserved or out-of-range codes to 1000."""
    if 1000 <= code <= 4999 and code not in RESERVED_CLOSE_CODES:
        return code
    return 1000


def truncate_close_reason(reason: str) -> str:
    encoded = reason.encode("utf-8")
    if len(encoded) <= MAX_CLOSE_REASON_BYTES:
        return reason
    return encoded[:MAX_CLOSE_REASON_BYTES].decode("utf-8", errors="ignore")


class ChannelClosed(Exception):
    """The peer closed the channel with a close frame."""

    def __init__(self, code: int = 1000, reason: str = ""):
        super().__init__(f"channel closed ({code}) {reason}".rstrip())
        self.code = code
        self.reason = reason


class Channel(Protocol):
    """One side of a relayed session."""

    name: str

    async def receive(self) -> Frame:
        """Return the next frame, or raise ChannelClosed when the peer closes."""
        ...

    async def send(self, frame: Frame) -> None:
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Run the closing handshake."""
        ...

    def abort(self) -> None:
        """Drop the connection without a closing handshake."""
        ...


class ClientChannel:
    """Browser side of the session (Starlette WebSocket)."""

    name = "client"

    def __init__(self, websocket: WebSocket):
        self._ws = websocket

    async def receive(self) -> Frame:
        message = await self._ws.receive()

        if message["type"] == "websocket.disconnect":
            raise ChannelClosed(message.get("code", 1000), message.get("reason") or "")

        if message.get("bytes") is not None:
            return message["bytes"]
        return message["text"]

    async def send(self, frame: Frame) -> None:
        try:
            if isinstance(frame, bytes):
                await self._ws.send_bytes(frame)
            else:
                await self._ws.send_text(frame)
        except WebSocketDisconnect as e:
            raise ChannelClosed(e.code, e.reason or "") from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if (
            self._ws.client_state == WebSocketState.DISCONNECTED
            or self._ws.application_state == WebSocketState.DISCONNECTED
        ):
            return
        await self._ws.close(code=get_safe_close_code(code), reason=truncate_close_reason(reason))

    def abort(self) -> None:
        """
        Stop using the client connection without a closing handshake.

        ASGI gives the application no handle on the underlying socket, so
        this cannot drop the connection itself. It only marks the channel as
        abandoned; the server releases the socket once the endpoint returns.
        """
        logger.debug("Client channel abandoned without closing handshake")


class UpstreamChannel:
    """Agent-service side of the session (websockets client connection)."""

    name = "upstream"

    def __init__(self, connection: ClientConnection):
        self._conn = connection

    async def receive(self) -> Frame:
        try:
            return await self._conn.recv()
        except ConnectionClosed as e:
            if e.rcvd is None:
                # no close frame from the peer: transport failure
                raise
            raise ChannelClosed(e.rcvd.code, e.rcvd.reason) from e

    async def send(self, frame: Frame) -> None:
        try:
            await self._conn.send(frame)
        except ConnectionClosed as e:
            if e.rcvd is None:
                raise
            raise ChannelClosed(e.rcvd.code, e.rcvd.reason) from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._conn.close(code=get_safe_close_code(code), reason=truncate_close_reason(reason))

    def abort(self) -> None:
        transport = self._conn.transport
        if transport is not None:
            transport.abort()
