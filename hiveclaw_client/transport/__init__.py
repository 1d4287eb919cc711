"""Transport layer for the HiveClaw client.

Components:
- ws: WebSocket connection setup
- ws_client: WebSocket frame iteration and sending
"""

from .ws import connect_websocket
from .ws_client import HiveClawWsClient, HiveClawWsMessage, HiveClawWsMessageType

__all__ = [
    "HiveClawWsClient",
    "HiveClawWsMessage",
    "HiveClawWsMessageType",
    "connect_websocket",
]
