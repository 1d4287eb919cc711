"""Conversation state models folded from gateway traffic."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

DEFAULT_AGENT_ID = "main"


class MessageRole(Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def utc_timestamp() -> str:
    """Return the current time as an ISO 8601 UTC string."""
    return datetime.now(tz=UTC).isoformat()


@dataclass(frozen=True)
class Message:
    """A single chat message. Immutable once appended to a session."""

    id: str
    role: MessageRole
    content: str
    timestamp: str = ""

    @classmethod
    def create(cls, role: MessageRole, content: str) -> Message:
        """Build a locally originated message with a fresh id."""
        return cls(id=uuid4().hex, role=role, content=content, timestamp=utc_timestamp())

    @classmethod
    def from_wire(cls, raw: Any) -> Message:
        """Parse a gateway message object.

        Raises:
            ValueError: If required fields are missing or the role is unknown.
        """
        if not isinstance(raw, dict):
            raise ValueError("message must be an object")
        message_id = raw.get("id")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("message id is required")
        content = raw.get("content")
        if not isinstance(content, str):
            raise ValueError(f"message {message_id} has no text content")
        try:
            role = MessageRole(raw.get("role"))
        except ValueError as err:
            raise ValueError(f"message {message_id} has unknown role {raw.get('role')!r}") from err
        timestamp = raw.get("timestamp")
        return cls(
            id=message_id,
            role=role,
            content=content,
            timestamp=timestamp if isinstance(timestamp, str) else "",
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass
class Session:
    """A chat session and its locally known message sequence.

    Attributes:
        id: Gateway session id (or a client placeholder while ``pending``).
        name: Display name.
        agent_id: Agent serving the session.
        created_at: Gateway creation timestamp.
        updated_at: Gateway last-update timestamp.
        messages: Messages in append order.
        pending: True for an optimistic placeholder awaiting ``session.create``.
    """

    id: str
    name: str = ""
    agent_id: str = DEFAULT_AGENT_ID
    created_at: str = ""
    updated_at: str = ""
    messages: list[Message] = field(default_factory=lambda: [])
    pending: bool = False

    @classmethod
    def from_wire(cls, raw: Any) -> Session:
        """Parse a gateway session summary.

        Messages that fail to parse are skipped.

        Raises:
            ValueError: If the summary has no id.
        """
        if not isinstance(raw, dict):
            raise ValueError("session summary must be an object")
        session_id = raw.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("session id is required")

        messages: list[Message] = []
        seen: set[str] = set()
        for item in raw.get("messages") or []:
            try:
                message = Message.from_wire(item)
            except ValueError:
                continue
            if message.id not in seen:
                seen.add(message.id)
                messages.append(message)

        return cls(
            id=session_id,
            name=str(raw.get("name") or ""),
            agent_id=str(raw.get("agentId") or DEFAULT_AGENT_ID),
            created_at=str(raw.get("createdAt") or ""),
            updated_at=str(raw.get("updatedAt") or ""),
            messages=messages,
        )


@dataclass(frozen=True)
class PendingRequest:
    """A request awaiting its correlated response.

    ``session_id`` and ``message_id`` point at optimistic local state that
    must be rolled back if the request fails.
    """

    id: str
    method: str
    issued_at: float
    session_id: str | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class Notice:
    """Recoverable failure surfaced to the presentation layer."""

    code: str
    message: str
    request_id: str | None = None
    method: str | None = None
