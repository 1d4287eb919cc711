"""WebSocket client wrapper for the HiveClaw gateway."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ..errors import HiveClawClientError, HiveClawConnectionError
from ..protocol import Envelope, decode
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class HiveClawWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class HiveClawWsMessage:
    """Normalized WebSocket message payload."""

    type: HiveClawWsMessageType
    data: str | bytes | None = None


class HiveClawWsClient:
    """Wrapper around the websockets library for one gateway connection."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the gateway websocket."""
        self._ws = await connect_websocket(
            url,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_frame(self, frame: bytes) -> None:
        """Send an encoded envelope as a TEXT frame.

        Raises:
            HiveClawConnectionError: If not connected or the peer went away
        """
        if self._ws is None:
            raise HiveClawConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(frame.decode("utf-8"))
        except ConnectionClosed as err:
            raise HiveClawConnectionError("WebSocket closed while sending") from err

    def __aiter__(self) -> AsyncIterator[HiveClawWsMessage]:
        if self._ws is None:
            raise HiveClawConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[HiveClawWsMessage]:
        if self._ws is None:
            raise HiveClawConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosedOK:
            yield HiveClawWsMessage(type=HiveClawWsMessageType.CLOSED)
        except ConnectionClosed:
            yield HiveClawWsMessage(type=HiveClawWsMessageType.ERROR)
        except Exception:
            yield HiveClawWsMessage(type=HiveClawWsMessageType.ERROR)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield HiveClawWsMessage(type=HiveClawWsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> HiveClawWsMessage | None:
        """Normalize raw frames into HiveClawWsMessage."""
        if isinstance(msg, (str, bytes)):
            return HiveClawWsMessage(HiveClawWsMessageType.TEXT, msg)
        return None

    @staticmethod
    def decode_envelope(message: HiveClawWsMessage) -> Envelope:
        """Decode a TEXT message payload into a protocol envelope.

        Raises:
            HiveClawClientError: If the message carries no frame data
            DecodeError: If the frame is not a valid envelope
        """
        if message.type is not HiveClawWsMessageType.TEXT:
            raise HiveClawClientError("Only TEXT messages can be decoded")
        if message.data is None:
            raise HiveClawClientError("Message has no data")
        return decode(message.data)
