"""
Shared fixtures and fakes for the gateway tests.

FakeChannel stands in for either side of a relayed session; FakeConnector
stands in for the upstream connector so endpoint tests never touch the
network.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from agent_gateway.app.auth.session import TOKEN_SUBPROTOCOL_PREFIX, issue_session_token
from agent_gateway.app.channels import ChannelClosed
from agent_gateway.app.config import Settings
from agent_gateway.app.main import create_app
from agent_gateway.app.models import SessionParams

TEST_API_KEY = "dg-test-api-key-never-sent-to-clients"
TEST_SESSION_SECRET = "test-session-secret-0123456789abcdef0123456789abcdef"


def make_settings(**overrides: Any) -> Settings:
    values = {
        "DEEPGRAM_API_KEY": TEST_API_KEY,
        "SESSION_SECRET": TEST_SESSION_SECRET,
        "RELAY_SEND_TIMEOUT_SECONDS": 1.0,
        "RELAY_CLOSE_TIMEOUT_SECONDS": 0.5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def forge_token(header: Dict[str, Any], secret: str = TEST_SESSION_SECRET, claims: Optional[Dict[str, Any]] = None) -> str:
    """HS256 token with an arbitrary header, correctly signed with `secret`."""
    if claims is None:
        now = int(time.time())
        claims = {"sid": "forged", "iat": now, "exp": now + 300}

    def segment(data: Dict[str, Any]) -> bytes:
        return base64.urlsafe_b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8")).rstrip(b"=")

    signing_input = segment(header) + b"." + segment(claims)
    signature = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return (signing_input + b"." + base64.urlsafe_b64encode(signature).rstrip(b"=")).decode("ascii")


class FakeChannel:
    """
    In-memory channel.

    Frames queued with feed() are returned by receive() in order; a queued
    exception is raised instead. Everything passed to send() is recorded.
    """

    def __init__(self, name: str):
        self.name = name
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[Any] = []
        self.closed_with: Optional[tuple] = None
        self.close_calls = 0
        self.aborted = False
        # unset Event: send() suspends until it is set (slow peer)
        self.send_gate: Optional[asyncio.Event] = None
        # peer never answers the closing handshake
        self.close_blocks = False
        # peer closes after this many frames have been delivered to it
        self.close_after: Optional[int] = None

    def feed(self, *frames: Any) -> None:
        for frame in frames:
            self.inbox.put_nowait(frame)

    def peer_close(self, code: int = 1000, reason: str = "") -> None:
        self.inbox.put_nowait(ChannelClosed(code, reason))

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, frame) -> None:
        if self.aborted or self.closed_with is not None:
            raise ConnectionResetError("send on closed channel")
        if self.send_gate is not None:
            await self.send_gate.wait()
        self.sent.append(frame)
        if self.close_after is not None and len(self.sent) == self.close_after:
            self.peer_close(1000, "done")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        if self.close_blocks:
            await asyncio.Event().wait()
        self.closed_with = (code, reason)

    def abort(self) -> None:
        self.aborted = True


class FakeConnector:
    """Records connect() calls and hands back a prepared upstream channel."""

    def __init__(self, upstream: Optional[FakeChannel] = None, error: Optional[Exception] = None):
        self.upstream = upstream or FakeChannel("upstream")
        self.error = error
        self.calls: List[SessionParams] = []

    async def connect(self, params: SessionParams) -> FakeChannel:
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.upstream


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def app(settings, connector):
    app = create_app(settings)
    app.state.upstream_connector = connector
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def token_subprotocol(settings) -> str:
    return TOKEN_SUBPROTOCOL_PREFIX + issue_session_token(settings).token
