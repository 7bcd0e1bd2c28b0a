"""
Session Relay Tests
===================

Tests for agent_gateway/app/realtime/relay.py, driven through in-memory
FakeChannel pairs.

Test Coverage:
--------------
1. Frames arrive in order, with their text/binary type intact, both ways
2. Upstream close is forwarded to the client with the same code
3. Client close closes upstream with 1000
4. Upstream I/O failure closes the client with 1011
5. A peer that stops draining ends the session after the send timeout
6. A peer that resumes draining loses nothing
7. A hung closing handshake is followed by a force-close
8. Cancelling the relay closes both sides with 1001
9. Termination runs once even when both sides end together
10. A pump that outlives the grace period is still collected
"""

import asyncio
import logging

import pytest

from agent_gateway.app.realtime.relay import SERVER_SIDE, SessionRelay

from .conftest import FakeChannel


class WedgedChannel(FakeChannel):
    """Channel whose receive() ignores cancellation until the channel is closed."""

    def __init__(self, name: str):
        super().__init__(name)
        self.released = asyncio.Event()

    async def receive(self):
        while not self.released.is_set():
            try:
                await self.released.wait()
            except asyncio.CancelledError:
                continue
        raise ConnectionResetError("closed under a wedged reader")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await super().close(code, reason)
        self.released.set()


def make_relay(client, upstream, send_timeout=1.0, close_timeout=0.2) -> SessionRelay:
    return SessionRelay(
        client,
        upstream,
        send_timeout=send_timeout,
        close_timeout=close_timeout,
        session_id="test-session",
    )


# ============================================================================
# Forwarding
# ============================================================================

@pytest.mark.asyncio
async def test_client_frames_reach_upstream_in_order():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    frames = [b"\x00\x01audio-1", '{"type":"Settings"}', b"\x02audio-2", b"", "", '{"type":"KeepAlive"}']
    client.feed(*frames)
    client.peer_close(1000, "bye")

    outcome = await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert upstream.sent == frames
    assert [type(f) for f in upstream.sent] == [type(f) for f in frames]
    assert outcome.ended_by == "client"
    assert outcome.clean
    assert outcome.client_to_upstream == len(frames)


@pytest.mark.asyncio
async def test_upstream_frames_reach_client_in_order():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    frames = ['{"type":"Welcome"}', b"tts-chunk-1", b"tts-chunk-2", '{"type":"AgentAudioDone"}']
    upstream.feed(*frames)
    upstream.peer_close(1000, "")

    outcome = await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert client.sent == frames
    assert outcome.upstream_to_client == len(frames)
    assert outcome.client_to_upstream == 0


@pytest.mark.asyncio
async def test_large_binary_frame_is_forwarded_unchanged():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    payload = bytes(range(256)) * 4096
    client.feed(payload)
    client.peer_close()

    await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert upstream.sent == [payload]


# ============================================================================
# Close Propagation
# ============================================================================

@pytest.mark.asyncio
async def test_upstream_close_is_forwarded_to_client():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    upstream.peer_close(4000, "Agent session ended")

    outcome = await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert outcome.ended_by == "upstream"
    assert outcome.code == 4000
    assert client.closed_with == (4000, "Agent session ended")
    assert upstream.close_calls == 0


@pytest.mark.asyncio
async def test_client_close_closes_upstream_normally():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    client.peer_close(1001, "tab closed")

    outcome = await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert outcome.ended_by == "client"
    assert upstream.closed_with == (1000, "Client disconnected")
    assert client.close_calls == 0


@pytest.mark.asyncio
async def test_nothing_is_forwarded_after_termination():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    upstream.peer_close(1000, "")

    await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)
    client.feed(b"late-audio")
    await asyncio.sleep(0.05)

    assert upstream.sent == []


@pytest.mark.asyncio
async def test_upstream_failure_closes_client_with_internal_error():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    upstream.feed(b"partial", ConnectionResetError("connection reset by peer"))

    outcome = await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert outcome.ended_by == "upstream"
    assert not outcome.clean
    assert outcome.error.side == "upstream"
    assert upstream.aborted
    assert client.sent == [b"partial"]
    assert client.closed_with == (1011, "Upstream connection lost")


@pytest.mark.asyncio
async def test_client_failure_aborts_client_and_closes_upstream():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    client.feed(RuntimeError("transport gone"))

    outcome = await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert outcome.ended_by == "client"
    assert outcome.error.side == "client"
    assert client.aborted
    assert upstream.closed_with == (1000, "Client disconnected")


# ============================================================================
# Backpressure
# ============================================================================

@pytest.mark.asyncio
async def test_stalled_client_ends_session_after_send_timeout():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    client.send_gate = asyncio.Event()
    upstream.feed(b"chunk-1", b"chunk-2", b"chunk-3")

    loop = asyncio.get_running_loop()
    started = loop.time()
    outcome = await asyncio.wait_for(make_relay(client, upstream, send_timeout=0.2).run(), timeout=2)
    elapsed = loop.time() - started

    assert 0.15 <= elapsed < 1.5
    assert outcome.ended_by == "client"
    assert "did not drain" in str(outcome.error)
    assert client.aborted
    assert upstream.closed_with == (1000, "Client disconnected")
    # The pump stopped reading upstream while the first frame was stuck
    assert client.sent == []
    assert upstream.inbox.qsize() == 2


@pytest.mark.asyncio
async def test_stalled_upstream_ends_session_after_send_timeout():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    upstream.send_gate = asyncio.Event()
    client.feed(b"audio")

    outcome = await asyncio.wait_for(make_relay(client, upstream, send_timeout=0.2).run(), timeout=2)

    assert outcome.ended_by == "upstream"
    assert upstream.aborted
    assert client.closed_with == (1011, "Upstream connection lost")


@pytest.mark.asyncio
async def test_slow_client_that_resumes_loses_nothing():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    client.send_gate = asyncio.Event()
    frames = [b"chunk-%d" % i for i in range(5)]
    upstream.feed(*frames)
    upstream.peer_close(1000, "")

    asyncio.get_running_loop().call_later(0.1, client.send_gate.set)
    outcome = await asyncio.wait_for(make_relay(client, upstream, send_timeout=2.0).run(), timeout=3)

    assert outcome.clean
    assert client.sent == frames


# ============================================================================
# Teardown
# ============================================================================

@pytest.mark.asyncio
async def test_hung_close_handshake_is_force_closed():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    upstream.close_blocks = True
    client.peer_close()

    loop = asyncio.get_running_loop()
    started = loop.time()
    await asyncio.wait_for(make_relay(client, upstream, close_timeout=0.2).run(), timeout=2)

    assert upstream.aborted
    assert upstream.closed_with is None
    assert loop.time() - started < 1.5


@pytest.mark.asyncio
async def test_pump_outliving_grace_period_is_reaped(caplog):
    client, upstream = FakeChannel("client"), WedgedChannel("upstream")
    client.peer_close()

    with caplog.at_level(logging.DEBUG, logger="agent_gateway.app.realtime.relay"):
        outcome = await asyncio.wait_for(make_relay(client, upstream, close_timeout=0.1).run(), timeout=2)
        await asyncio.sleep(0.05)

    assert outcome.ended_by == "client"
    assert upstream.closed_with == (1000, "Client disconnected")
    assert "did not stop within grace period" in caplog.text
    assert "finished after teardown" in caplog.text


@pytest.mark.asyncio
async def test_cancelling_relay_closes_both_sides_going_away():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    relay = make_relay(client, upstream)

    task = asyncio.create_task(relay.run())
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert client.closed_with == (1001, "Server shutting down")
    assert upstream.closed_with == (1001, "Server shutting down")


@pytest.mark.asyncio
async def test_simultaneous_close_terminates_once():
    client, upstream = FakeChannel("client"), FakeChannel("upstream")
    client.peer_close(1000, "")
    upstream.peer_close(1000, "")

    outcome = await asyncio.wait_for(make_relay(client, upstream).run(), timeout=2)

    assert outcome.ended_by in {"client", "upstream"}
    assert outcome.ended_by != SERVER_SIDE
    assert client.close_calls + upstream.close_calls == 1
