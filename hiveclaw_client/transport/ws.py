"""WebSocket connection setup for the HiveClaw gateway."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    HiveClawConnectionError,
    HiveClawHandshakeError,
    HiveClawTimeout,
)

_LOGGER = logging.getLogger(__name__)

WS_SCHEMES = ("ws", "wss")


async def connect_websocket(
    url: str,
    *,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open a WebSocket to the gateway.

    Args:
        url: Full endpoint address, e.g. ``ws://localhost:8080/ws``
        ping_interval: Keepalive ping interval (None disables keepalive)
        timeout: Seconds allowed for TCP connect plus opening handshake

    Raises:
        HiveClawHandshakeError: Bad URL or rejected upgrade
        HiveClawTimeout: The attempt did not finish within ``timeout``
        HiveClawConnectionError: Any other network failure
    """
    if urlsplit(url).scheme not in WS_SCHEMES:
        raise HiveClawHandshakeError(f"Not a WebSocket URL: {url}")

    _LOGGER.debug("Opening WebSocket to %s (timeout %.1fs)", url, timeout)
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise HiveClawTimeout(f"WebSocket connection to {url} timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise HiveClawHandshakeError(f"WebSocket handshake with {url} failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise HiveClawConnectionError(f"WebSocket connection to {url} failed: {err}") from err
