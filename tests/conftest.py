"""Pytest configuration and fixtures for hiveclaw_client tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hiveclaw_client.connection import ConnectionState
from hiveclaw_client.errors import HiveClawConnectionError, NotConnectedError
from hiveclaw_client.protocol import Envelope, Request
from hiveclaw_client.transport.ws_client import (
    HiveClawWsClient,
    HiveClawWsMessage,
    HiveClawWsMessageType,
)

GATEWAY_URL = "ws://gateway.test:8080/ws"


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: Any = None,
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until predicate() holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


# -----------------------------------------------------------------------------
# Fake transport for ConnectionManager tests
# -----------------------------------------------------------------------------


class FakeWsClient:
    """Scriptable stand-in for HiveClawWsClient."""

    decode_envelope = staticmethod(HiveClawWsClient.decode_envelope)

    def __init__(
        self,
        *,
        fail: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.fail = fail
        self.gate = gate
        self.url: str | None = None
        self.connect_kwargs: dict[str, Any] = {}
        self.sent: list[bytes] = []
        self.closed = False
        self._incoming: asyncio.Queue[HiveClawWsMessage] = asyncio.Queue()

    async def connect(self, url: str, **kwargs: Any) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        self.url = url
        self.connect_kwargs = kwargs

    async def close(self) -> None:
        self.closed = True

    async def send_frame(self, frame: bytes) -> None:
        if self.closed:
            raise HiveClawConnectionError("WebSocket is not connected")
        self.sent.append(frame)

    def __aiter__(self) -> AsyncIterator[HiveClawWsMessage]:
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[HiveClawWsMessage]:
        while True:
            msg = await self._incoming.get()
            yield msg
            if msg.type is not HiveClawWsMessageType.TEXT:
                return

    def push_text(self, data: str) -> None:
        self._incoming.put_nowait(HiveClawWsMessage(HiveClawWsMessageType.TEXT, data))

    def drop(self) -> None:
        """Simulate the gateway closing the socket."""
        self._incoming.put_nowait(HiveClawWsMessage(HiveClawWsMessageType.CLOSED))

    def error(self) -> None:
        """Simulate a transport error."""
        self._incoming.put_nowait(HiveClawWsMessage(HiveClawWsMessageType.ERROR))


class FakeWsFactory:
    """Creates FakeWsClient instances in place of HiveClawWsClient.

    ``outcomes`` is consumed one entry per connection attempt; when it is
    empty ``default_failure`` decides the outcome.
    """

    def __init__(self) -> None:
        self.clients: list[FakeWsClient] = []
        self.outcomes: list[Exception | None] = []
        self.default_failure: Exception | None = None
        self.gate: asyncio.Event | None = None

    def __call__(self) -> FakeWsClient:
        fail = self.outcomes.pop(0) if self.outcomes else self.default_failure
        client = FakeWsClient(fail=fail, gate=self.gate)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeWsClient:
        return self.clients[-1]


@pytest.fixture
def ws_factory() -> Iterator[FakeWsFactory]:
    """Patch the connection manager's WebSocket client with fakes."""
    factory = FakeWsFactory()
    with patch("hiveclaw_client.connection.HiveClawWsClient", factory):
        yield factory


# -----------------------------------------------------------------------------
# Fake connection for ProtocolReconciler tests
# -----------------------------------------------------------------------------


class FakeConnection:
    """Records sent envelopes and replays scripted inbound ones."""

    def __init__(self) -> None:
        self.state = ConnectionState.OPEN
        self.sent: list[Envelope] = []
        self._inbound: asyncio.Queue[Envelope | None] = asyncio.Queue()

    def send(self, envelope: Envelope) -> None:
        if self.state is not ConnectionState.OPEN:
            raise NotConnectedError("WebSocket is not connected")
        self.sent.append(envelope)

    def requests(self, method: str | None = None) -> list[Request]:
        return [
            e
            for e in self.sent
            if isinstance(e, Request) and (method is None or e.method == method)
        ]

    def feed(self, *envelopes: Envelope) -> None:
        for envelope in envelopes:
            self._inbound.put_nowait(envelope)

    def finish(self) -> None:
        self._inbound.put_nowait(None)

    async def envelopes(self) -> AsyncIterator[Envelope]:
        while True:
            envelope = await self._inbound.get()
            if envelope is None:
                return
            yield envelope


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()
