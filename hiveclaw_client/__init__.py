"""Realtime client for the HiveClaw gateway."""

__version__ = "0.1.0"

from .config import ClientConfig, load_config
from .connection import ConnectionManager, ConnectionState, backoff_delay
from .errors import (
    ConfigLoadError,
    DecodeError,
    DecodeErrorKind,
    ErrorKind,
    HiveClawClientError,
    HiveClawConnectionError,
    HiveClawHandshakeError,
    HiveClawResponseError,
    HiveClawTimeout,
    NotConnectedError,
)
from .http import GatewayHttpClient
from .models import Message, MessageRole, Notice, PendingRequest, Session
from .protocol import Envelope, Event, Request, Response, ResponseError, decode, encode
from .reconciler import ProtocolReconciler

__all__ = [
    "ClientConfig",
    "ConfigLoadError",
    "ConnectionManager",
    "ConnectionState",
    "DecodeError",
    "DecodeErrorKind",
    "Envelope",
    "ErrorKind",
    "Event",
    "GatewayHttpClient",
    "HiveClawClientError",
    "HiveClawConnectionError",
    "HiveClawHandshakeError",
    "HiveClawResponseError",
    "HiveClawTimeout",
    "Message",
    "MessageRole",
    "Notice",
    "NotConnectedError",
    "PendingRequest",
    "ProtocolReconciler",
    "Request",
    "Response",
    "ResponseError",
    "Session",
    "__version__",
    "backoff_delay",
    "decode",
    "encode",
    "load_config",
]
