"""
Session Relay
=============

Moves frames verbatim between the browser connection and the upstream agent
connection until either side ends.

Each session runs two concurrent pump tasks:
1. client -> upstream: reads a frame from the browser, writes it upstream
2. upstream -> client: reads a frame from the agent, writes it to the browser

Both pumps share a single shutdown event. The first pump to observe a close
frame or an I/O failure records why it stopped and sets the event; the relay
then cancels the sibling pump, closes the surviving side with a bounded
closing handshake, and force-closes it if the handshake does not finish in
time. Frames are never inspected, buffered or reordered: each pump awaits
its destination's send before reading the next frame, so a slow peer
suspends the pump instead of growing a queue.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from ..channels import Channel, ChannelClosed

logger = logging.getLogger(__name__)

SERVER_SIDE = "server"


class RelayError(Exception):
    """Mid-session I/O failure on one side of the relay."""

    def __init__(self, side: str, message: str):
        super().__init__(f"{side}: {message}")
        self.side = side


@dataclass
class RelayOutcome:
    """Why and how a session ended."""

    ended_by: str
    code: int = 1000
    reason: str = ""
    error: Optional[RelayError] = None
    client_to_upstream: int = 0
    upstream_to_client: int = 0

    @property
    def clean(self) -> bool:
        return self.error is None


class SessionRelay:
    """
    Full-duplex relay for one client/upstream pair.

    Usage::

        relay = SessionRelay(ClientChannel(ws), upstream, send_timeout=10, close_timeout=3)
        outcome = await relay.run()  # blocks until either side ends

    The relay owns both channels for the life of the session. Cancelling
    the task running run() tears the session down with 1001 on both sides.
    """

    def __init__(
        self,
        client: Channel,
        upstream: Channel,
        send_timeout: Optional[float] = None,
        close_timeout: float = 3.0,
        session_id: str = "",
    ) -> None:
        self._client = client
        self._upstream = upstream
        self._send_timeout = send_timeout
        self._close_timeout = close_timeout
        self._session_id = session_id
        self._stopping = asyncio.Event()
        self._outcome: Optional[RelayOutcome] = None
        self._terminated = False
        self._forwarded: Dict[str, int] = {client.name: 0, upstream.name: 0}

    async def run(self) -> RelayOutcome:
        """Relay until either side closes or fails, then tear down both."""
        pumps = [
            asyncio.create_task(
                self._pump(self._client, self._upstream),
                name=f"relay-{self._session_id}-client-to-upstream",
            ),
            asyncio.create_task(
                self._pump(self._upstream, self._client),
                name=f"relay-{self._session_id}-upstream-to-client",
            ),
        ]

        try:
            await self._stopping.wait()
        except asyncio.CancelledError:
            self._finish(RelayOutcome(ended_by=SERVER_SIDE, code=1001, reason="Server shutting down"))
            await self._terminate(pumps)
            raise

        await self._terminate(pumps)
        return self._outcome

    # ------------------------------------------------------------------
    # Pumps
    # ------------------------------------------------------------------

    async def _pump(self, source: Channel, destination: Channel) -> None:
        while not self._stopping.is_set():
            try:
                frame = await source.receive()
            except ChannelClosed as e:
                self._finish(RelayOutcome(ended_by=source.name, code=e.code, reason=e.reason))
                return
            except Exception as e:
                self._finish(RelayOutcome(
                    ended_by=source.name,
                    error=RelayError(source.name, f"read failed ({type(e).__name__})"),
                ))
                return

            if self._stopping.is_set():
                # shutdown began while this frame was in flight; it is dropped whole
                return

            try:
                await asyncio.wait_for(destination.send(frame), timeout=self._send_timeout)
            except asyncio.TimeoutError:
                self._finish(RelayOutcome(
                    ended_by=destination.name,
                    error=RelayError(destination.name, f"did not drain within {self._send_timeout}s"),
                ))
                return
            except ChannelClosed as e:
                self._finish(RelayOutcome(ended_by=destination.name, code=e.code, reason=e.reason))
                return
            except Exception as e:
                self._finish(RelayOutcome(
                    ended_by=destination.name,
                    error=RelayError(destination.name, f"write failed ({type(e).__name__})"),
                ))
                return

            self._forwarded[source.name] += 1

    def _finish(self, outcome: RelayOutcome) -> None:
        """Record the first ending and raise the shared shutdown signal."""
        if self._outcome is None:
            self._outcome = outcome
        self._stopping.set()

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _terminate(self, pumps: Iterable[asyncio.Task]) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._stopping.set()

        running = [task for task in pumps if not task.done()]
        for task in running:
            task.cancel()
        if running:
            _, stuck = await asyncio.wait(running, timeout=self._close_timeout)
            if stuck:
                logger.warning(
                    "Relay pump did not stop within grace period",
                    extra={"session_id": self._session_id, "pumps": [t.get_name() for t in stuck]}
                )
                for task in stuck:
                    task.add_done_callback(self._reap_late_pump)

        outcome = self._outcome
        outcome.client_to_upstream = self._forwarded[self._client.name]
        outcome.upstream_to_client = self._forwarded[self._upstream.name]

        if outcome.ended_by == SERVER_SIDE:
            await self._close_gracefully(self._client, outcome.code, outcome.reason)
            await self._close_gracefully(self._upstream, outcome.code, outcome.reason)
        elif outcome.ended_by == self._upstream.name:
            if outcome.error is not None:
                self._upstream.abort()
                await self._close_gracefully(self._client, 1011, "Upstream connection lost")
            else:
                await self._close_gracefully(self._client, outcome.code, outcome.reason)
        else:
            if outcome.error is not None:
                self._client.abort()
            await self._close_gracefully(self._upstream, 1000, "Client disconnected")

        log = logger.info if outcome.clean else logger.warning
        log(
            "Session ended",
            extra={
                "session_id": self._session_id,
                "ended_by": outcome.ended_by,
                "close_code": outcome.code,
                "error": str(outcome.error) if outcome.error else None,
                "client_to_upstream": outcome.client_to_upstream,
                "upstream_to_client": outcome.upstream_to_client,
            }
        )

    def _reap_late_pump(self, task: asyncio.Task) -> None:
        """Collect the result of a pump that outlived the grace period."""
        error = None if task.cancelled() else task.exception()
        logger.debug(
            "Relay pump finished after teardown",
            extra={
                "session_id": self._session_id,
                "pump": task.get_name(),
                "error": type(error).__name__ if error else None,
            }
        )

    async def _close_gracefully(self, channel: Channel, code: int, reason: str) -> None:
        """Closing handshake bounded by close_timeout, then force-close."""
        try:
            await asyncio.wait_for(channel.close(code, reason), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{channel.name} did not complete closing handshake, aborting",
                extra={"session_id": self._session_id}
            )
            channel.abort()
        except Exception as e:
            logger.warning(
                f"Error closing {channel.name} connection: {type(e).__name__}",
                extra={"session_id": self._session_id}
            )
            channel.abort()
