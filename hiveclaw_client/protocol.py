"""Envelope codec for the HiveClaw gateway WebSocket protocol.

Every frame on the wire is a JSON object discriminated by ``type``:

    {"type": "req",   "id": ..., "method": ..., "params": {...}}
    {"type": "res",   "id": ..., "ok": true,  "payload": ...}
    {"type": "res",   "id": ..., "ok": false, "error": {"code": ..., "message": ...}}
    {"type": "event", "event": ..., "payload": ...}

Encoding and decoding are pure and safe to call from any task.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from .errors import DecodeError, DecodeErrorKind

TYPE_REQUEST = "req"
TYPE_RESPONSE = "res"
TYPE_EVENT = "event"


@dataclass(frozen=True)
class Request:
    """Client or gateway initiated request."""

    id: str
    method: str
    params: dict[str, Any] = field(default_factory=lambda: {})


@dataclass(frozen=True)
class ResponseError:
    """Application-level failure carried by a ``res`` frame."""

    code: str
    message: str


@dataclass(frozen=True)
class Response:
    """Reply correlated to a request by ``id``."""

    id: str
    ok: bool
    payload: Any = None
    error: ResponseError | None = None


@dataclass(frozen=True)
class Event:
    """Unsolicited gateway notification."""

    name: str
    payload: Any = None


Envelope = Request | Response | Event


def new_request_id() -> str:
    """Return a fresh correlation id."""
    return uuid.uuid4().hex


def to_wire(envelope: Envelope) -> dict[str, Any]:
    """Convert an envelope into its wire mapping."""
    if isinstance(envelope, Request):
        return {
            "type": TYPE_REQUEST,
            "id": envelope.id,
            "method": envelope.method,
            "params": envelope.params,
        }

    if isinstance(envelope, Response):
        frame: dict[str, Any] = {
            "type": TYPE_RESPONSE,
            "id": envelope.id,
            "ok": envelope.ok,
        }
        if envelope.payload is not None:
            frame["payload"] = envelope.payload
        if envelope.error is not None:
            frame["error"] = {
                "code": envelope.error.code,
                "message": envelope.error.message,
            }
        return frame

    if isinstance(envelope, Event):
        frame = {"type": TYPE_EVENT, "event": envelope.name}
        if envelope.payload is not None:
            frame["payload"] = envelope.payload
        return frame

    raise TypeError(f"Not an envelope: {type(envelope).__name__}")


def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope to UTF-8 JSON bytes."""
    return json.dumps(to_wire(envelope), separators=(",", ":")).encode("utf-8")


def decode(data: bytes | str) -> Envelope:
    """Parse a wire frame into an envelope.

    Raises:
        DecodeError: ``MALFORMED`` if the frame is not well-formed JSON,
            ``UNKNOWN_SHAPE`` if it parses but matches none of the
            three envelope forms.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecodeError(DecodeErrorKind.MALFORMED, "Frame is not UTF-8") from err

    try:
        raw = json.loads(data)
    except json.JSONDecodeError as err:
        raise DecodeError(
            DecodeErrorKind.MALFORMED, f"Frame is not valid JSON: {err.msg}"
        ) from err
    except (ValueError, RecursionError) as err:
        # Oversized integer literals and excessive nesting
        raise DecodeError(DecodeErrorKind.MALFORMED, f"Frame rejected: {err}") from err

    return from_wire(raw)


def from_wire(raw: Any) -> Envelope:
    """Build an envelope from an already parsed wire mapping."""
    if not isinstance(raw, dict):
        raise DecodeError(
            DecodeErrorKind.UNKNOWN_SHAPE,
            f"Frame must be an object, got {type(raw).__name__}",
        )

    msg_type = raw.get("type")
    if msg_type == TYPE_REQUEST:
        return _parse_request(raw)
    if msg_type == TYPE_RESPONSE:
        return _parse_response(raw)
    if msg_type == TYPE_EVENT:
        return _parse_event(raw)

    if msg_type is None:
        raise DecodeError(DecodeErrorKind.UNKNOWN_SHAPE, "Frame has no type")
    raise DecodeError(DecodeErrorKind.UNKNOWN_SHAPE, f"Unknown frame type: {msg_type!r}")


def _require_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise DecodeError(
            DecodeErrorKind.UNKNOWN_SHAPE,
            f"{raw.get('type')} frame requires string field {key!r}",
        )
    return value


def _parse_request(raw: dict[str, Any]) -> Request:
    params = raw.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise DecodeError(DecodeErrorKind.UNKNOWN_SHAPE, "req params must be an object")
    return Request(
        id=_require_str(raw, "id"),
        method=_require_str(raw, "method"),
        params=params,
    )


def _parse_response(raw: dict[str, Any]) -> Response:
    ok = raw.get("ok")
    # bool is checked explicitly; 0/1 are not accepted as ok flags
    if not isinstance(ok, bool):
        raise DecodeError(DecodeErrorKind.UNKNOWN_SHAPE, "res frame requires boolean 'ok'")

    error: ResponseError | None = None
    error_raw = raw.get("error")
    if isinstance(error_raw, dict):
        error = ResponseError(
            code=str(error_raw.get("code", "")),
            message=str(error_raw.get("message", "")),
        )
    elif error_raw is not None:
        raise DecodeError(DecodeErrorKind.UNKNOWN_SHAPE, "res error must be an object")

    return Response(
        id=_require_str(raw, "id"),
        ok=ok,
        payload=raw.get("payload"),
        error=error,
    )


def _parse_event(raw: dict[str, Any]) -> Event:
    return Event(name=_require_str(raw, "event"), payload=raw.get("payload"))
