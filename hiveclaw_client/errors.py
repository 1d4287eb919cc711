"""Client error types for HiveClaw gateway interactions."""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Distinguishable failure kinds raised by the client."""

    NOT_CONNECTED = "not_connected"


class DecodeErrorKind(Enum):
    """Reasons an inbound frame could not be decoded into an envelope."""

    MALFORMED = "malformed"
    UNKNOWN_SHAPE = "unknown_shape"


class HiveClawClientError(Exception):
    """Base error for HiveClaw client failures."""


class HiveClawTimeout(HiveClawClientError):
    """Timeout while communicating with the gateway."""


class HiveClawConnectionError(HiveClawClientError):
    """Network connection to the gateway failed."""


class HiveClawHandshakeError(HiveClawClientError):
    """WebSocket handshake failed."""


class HiveClawResponseError(HiveClawClientError):
    """HTTP response error from the gateway."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class NotConnectedError(HiveClawClientError):
    """An envelope was sent while the connection was not open.

    The envelope was not delivered and was not queued.
    """

    kind = ErrorKind.NOT_CONNECTED


class DecodeError(HiveClawClientError):
    """Inbound frame is not a valid protocol envelope."""

    def __init__(self, kind: DecodeErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ConfigLoadError(HiveClawClientError):
    """Client configuration could not be loaded."""
