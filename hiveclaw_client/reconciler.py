"""Protocol reconciler: folds gateway traffic into conversation state.

The reconciler consumes the connection's envelope stream strictly in order,
correlates responses to pending requests by id, applies events, and exposes
the derived state (sessions, visible messages, connectivity) together with
the intents of the presentation layer (new session, select session, send).

All mutation happens on one task, so the state needs no locking.

Usage:
    manager = ConnectionManager("ws://localhost:8080/ws")
    reconciler = ProtocolReconciler(manager)
    reconciler.on_change(render)
    await manager.start()
    asyncio.create_task(reconciler.run())
    reconciler.send_user_message("hello")
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .errors import NotConnectedError
from .models import Message, MessageRole, Notice, PendingRequest, Session, utc_timestamp
from .protocol import Envelope, Event, Request, Response, new_request_id

if TYPE_CHECKING:
    from .config import ClientConfig
    from .connection import ConnectionManager, ConnectionState

_LOGGER = logging.getLogger(__name__)

METHOD_SESSION_LIST = "session.list"
METHOD_SESSION_CREATE = "session.create"
METHOD_CHAT_SEND = "chat.send"

EVENT_CONNECTED = "connected"
EVENT_MESSAGE = "message"

NOTICE_TIMEOUT = "TIMEOUT"

DEFAULT_SESSION = "main"
MAX_NOTICES = 50


def _add_callback(callbacks: list[Any], callback: Any) -> Callable[[], None]:
    callbacks.append(callback)

    def remove() -> None:
        try:
            callbacks.remove(callback)
        except ValueError:
            pass

    return remove


class ProtocolReconciler:
    """Client-side conversation state driven by gateway envelopes."""

    def __init__(
        self,
        connection: ConnectionManager,
        *,
        default_session: str = DEFAULT_SESSION,
        request_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the reconciler.

        Args:
            connection: Connection used for sending and as the envelope source
            default_session: Session token for chat when no session is active
            request_timeout: Seconds before an unanswered request expires
                (None keeps requests pending until answered)
            clock: Time source for request bookkeeping
        """
        self._connection = connection
        self._default_session = default_session
        self._request_timeout = request_timeout
        self._clock = clock

        self._pending: dict[str, PendingRequest] = {}
        self._sessions: dict[str, Session] = {}
        self._active_session_id: str | None = None
        # Visible sequence while the active session is not in the table
        self._detached_messages: list[Message] = []

        self._notices: deque[Notice] = deque(maxlen=MAX_NOTICES)
        self._change_callbacks: list[Callable[[], None]] = []
        self._notice_callbacks: list[Callable[[Notice], None]] = []

    @classmethod
    def from_config(
        cls, connection: ConnectionManager, config: ClientConfig
    ) -> ProtocolReconciler:
        """Create a reconciler from a loaded ClientConfig."""
        return cls(
            connection,
            default_session=config.default_session,
            request_timeout=config.request_timeout,
        )

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def sessions(self) -> tuple[Session, ...]:
        """Known sessions in table order."""
        return tuple(self._sessions.values())

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    @property
    def messages(self) -> tuple[Message, ...]:
        """Message sequence of the active conversation."""
        return tuple(self._visible_messages())

    @property
    def pending(self) -> Mapping[str, PendingRequest]:
        """Requests awaiting a response, keyed by id."""
        return MappingProxyType(dict(self._pending))

    @property
    def notices(self) -> tuple[Notice, ...]:
        """Most recent failure notices, oldest first."""
        return tuple(self._notices)

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    # -------------------------------------------------------------------------
    # Public API: Observers
    # -------------------------------------------------------------------------

    def on_change(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback run after every state change. Returns a removal function."""
        return _add_callback(self._change_callbacks, callback)

    def on_notice(self, callback: Callable[[Notice], None]) -> Callable[[], None]:
        """Register a callback for failure notices. Returns a removal function."""
        return _add_callback(self._notice_callbacks, callback)

    # -------------------------------------------------------------------------
    # Public API: Intents
    # -------------------------------------------------------------------------

    def issue_request(self, method: str, params: dict[str, Any] | None = None) -> str:
        """Send a request and return its correlation id without waiting.

        Raises:
            NotConnectedError: If the connection is not open; nothing is
                recorded as pending.
        """
        return self._issue(method, params or {})

    def select_session(self, session_id: str) -> None:
        """Make a session active. Local only; no request is sent."""
        self._active_session_id = session_id
        if session_id not in self._sessions:
            self._detached_messages = []
        _LOGGER.debug("Selected session %s", session_id)
        self._notify_change()

    def new_session(self, name: str | None = None) -> str:
        """Create an optimistic session placeholder and request its creation.

        Returns:
            The placeholder id. It is replaced by the gateway's id once the
            ``session.create`` response arrives.

        Raises:
            NotConnectedError: If the connection is not open; the placeholder
                is discarded and the previous selection restored.
        """
        if not name:
            name = f"New Chat {len(self._sessions) + 1}"
        now = utc_timestamp()
        placeholder = Session(
            id=f"session_{uuid4().hex[:12]}",
            name=name,
            created_at=now,
            updated_at=now,
            pending=True,
        )

        previous_active = self._active_session_id
        previous_detached = self._detached_messages
        self._sessions[placeholder.id] = placeholder
        self._active_session_id = placeholder.id

        try:
            self._issue(METHOD_SESSION_CREATE, {"name": name}, session_id=placeholder.id)
        except NotConnectedError:
            del self._sessions[placeholder.id]
            self._active_session_id = previous_active
            self._detached_messages = previous_detached
            raise

        self._notify_change()
        return placeholder.id

    def send_user_message(self, content: str) -> str | None:
        """Append a user message immediately and send it as ``chat.send``.

        Blank content is ignored.

        Returns:
            Request id, or None if nothing was sent.

        Raises:
            NotConnectedError: If the connection is not open; the optimistic
                message is retracted.
        """
        if not content.strip():
            return None

        session_id = self._active_session_id
        message = Message.create(MessageRole.USER, content)
        self._visible_messages().append(message)

        try:
            request_id = self._issue(
                METHOD_CHAT_SEND,
                {"sessionId": session_id or self._default_session, "message": content},
                session_id=session_id,
                message_id=message.id,
            )
        except NotConnectedError:
            self._retract_message(session_id, message.id)
            raise

        self._notify_change()
        return request_id

    def expire_pending(self, now: float | None = None) -> list[PendingRequest]:
        """Drop requests older than the request timeout.

        Each expired request is surfaced as a notice and its optimistic state
        is rolled back.

        Returns:
            The expired requests.
        """
        if self._request_timeout is None or not self._pending:
            return []

        now = self._clock() if now is None else now
        expired = [
            pending
            for pending in self._pending.values()
            if now - pending.issued_at >= self._request_timeout
        ]
        for pending in expired:
            del self._pending[pending.id]
            self._rollback(pending)
            self._surface(
                Notice(
                    code=NOTICE_TIMEOUT,
                    message=f"{pending.method} timed out",
                    request_id=pending.id,
                    method=pending.method,
                )
            )

        if expired:
            self._notify_change()
        return expired

    # -------------------------------------------------------------------------
    # Public API: Inbound
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Apply the connection's envelope stream until it ends."""
        async for envelope in self._connection.envelopes():
            try:
                self.apply(envelope)
            except Exception as err:
                _LOGGER.exception("Failed to apply %s: %s", envelope, err)

    def apply(self, envelope: Envelope) -> None:
        """Fold one inbound envelope into local state."""
        self.expire_pending()

        if isinstance(envelope, Response):
            changed = self._apply_response(envelope)
        elif isinstance(envelope, Event):
            changed = self._apply_event(envelope)
        elif isinstance(envelope, Request):
            _LOGGER.debug("Ignoring gateway request %s", envelope.method)
            changed = False
        else:
            raise TypeError(f"Not an envelope: {type(envelope).__name__}")

        if changed:
            self._notify_change()

    # -------------------------------------------------------------------------
    # Internal: Requests
    # -------------------------------------------------------------------------

    def _issue(
        self,
        method: str,
        params: dict[str, Any],
        *,
        session_id: str | None = None,
        message_id: str | None = None,
    ) -> str:
        self.expire_pending()

        request_id = new_request_id()
        while request_id in self._pending:
            request_id = new_request_id()

        self._pending[request_id] = PendingRequest(
            id=request_id,
            method=method,
            issued_at=self._clock(),
            session_id=session_id,
            message_id=message_id,
        )
        try:
            self._connection.send(Request(id=request_id, method=method, params=params))
        except NotConnectedError:
            del self._pending[request_id]
            raise

        _LOGGER.debug("Issued %s (%s)", method, request_id)
        return request_id

    # -------------------------------------------------------------------------
    # Internal: Responses
    # -------------------------------------------------------------------------

    def _apply_response(self, response: Response) -> bool:
        pending = self._pending.pop(response.id, None)
        if pending is None:
            _LOGGER.debug("Dropping unmatched response %s", response.id)
            return False

        if not response.ok:
            self._rollback(pending)
            error = response.error
            self._surface(
                Notice(
                    code=error.code if error else "UNKNOWN",
                    message=error.message if error else f"{pending.method} failed",
                    request_id=pending.id,
                    method=pending.method,
                )
            )
            return True

        payload = response.payload
        if isinstance(payload, list):
            self._replace_session_table(payload)
            return True

        if isinstance(payload, dict):
            if isinstance(payload.get("response"), str):
                self._visible_messages().append(
                    Message.create(MessageRole.ASSISTANT, payload["response"])
                )
                return True
            if pending.method == METHOD_SESSION_CREATE:
                return self._confirm_session(pending, payload)

        _LOGGER.debug("No state change for %s response", pending.method)
        return True

    def _replace_session_table(self, summaries: list[Any]) -> None:
        """Replace the whole session table with a gateway listing."""
        visible = self._visible_messages()

        table: dict[str, Session] = {}
        for raw in summaries:
            try:
                session = Session.from_wire(raw)
            except ValueError as err:
                _LOGGER.warning("Skipping invalid session summary: %s", err)
                continue
            table[session.id] = session

        active = self._active_session_id
        if active is not None and active in table:
            # The live conversation is kept as-is across refreshes
            table[active].messages = visible
            self._detached_messages = []
        else:
            self._detached_messages = visible

        self._sessions = table
        _LOGGER.debug("Session table refreshed: %d sessions", len(table))

    def _confirm_session(self, pending: PendingRequest, payload: dict[str, Any]) -> bool:
        """Replace an optimistic placeholder with the gateway's session."""
        try:
            session = Session.from_wire(payload)
        except ValueError as err:
            _LOGGER.warning("Invalid session.create payload: %s", err)
            return False

        placeholder_id = pending.session_id
        placeholder = self._sessions.get(placeholder_id) if placeholder_id else None
        if placeholder is not None:
            local = placeholder.messages
        elif placeholder_id is not None and placeholder_id == self._active_session_id:
            local = self._detached_messages
            self._detached_messages = []
        else:
            local = []

        known = {m.id for m in local}
        session.messages = local + [m for m in session.messages if m.id not in known]

        if placeholder_id is not None and placeholder_id in self._sessions:
            self._sessions = {
                (session.id if key == placeholder_id else key): (
                    session if key == placeholder_id else value
                )
                for key, value in self._sessions.items()
            }
        else:
            self._sessions[session.id] = session

        if placeholder_id is not None and self._active_session_id == placeholder_id:
            self._active_session_id = session.id

        _LOGGER.debug("Session %s confirmed as %s", placeholder_id, session.id)
        return True

    def _rollback(self, pending: PendingRequest) -> None:
        """Undo optimistic state attached to a failed request."""
        if pending.method == METHOD_CHAT_SEND and pending.message_id:
            self._retract_message(pending.session_id, pending.message_id)
        elif pending.method == METHOD_SESSION_CREATE and pending.session_id:
            placeholder = self._sessions.get(pending.session_id)
            if placeholder is not None and placeholder.pending:
                del self._sessions[pending.session_id]
            if self._active_session_id == pending.session_id:
                self._active_session_id = None
                self._detached_messages = []

    def _retract_message(self, session_id: str | None, message_id: str) -> None:
        session = self._sessions.get(session_id) if session_id else None
        if session is not None:
            messages = session.messages
        elif session_id == self._active_session_id:
            messages = self._detached_messages
        else:
            return
        messages[:] = [m for m in messages if m.id != message_id]

    # -------------------------------------------------------------------------
    # Internal: Events
    # -------------------------------------------------------------------------

    def _apply_event(self, event: Event) -> bool:
        if event.name == EVENT_CONNECTED:
            _LOGGER.info("Connected to gateway, refreshing sessions")
            try:
                self._issue(METHOD_SESSION_LIST, {})
            except NotConnectedError:
                _LOGGER.warning("Connection dropped before session refresh")
            return False

        if event.name == EVENT_MESSAGE:
            return self._apply_message_event(event.payload)

        _LOGGER.debug("Ignoring event %s", event.name)
        return False

    def _apply_message_event(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            _LOGGER.warning("Dropping message event without payload")
            return False

        session_id = payload.get("sessionId")
        if session_id is None or session_id != self._active_session_id:
            # Inactive sessions are not tracked client-side
            _LOGGER.debug("Ignoring message for inactive session %s", session_id)
            return False

        try:
            message = Message.from_wire(payload.get("message"))
        except ValueError as err:
            _LOGGER.warning("Dropping invalid message event: %s", err)
            return False

        visible = self._visible_messages()
        if any(m.id == message.id for m in visible):
            _LOGGER.debug("Duplicate message %s ignored", message.id)
            return False

        visible.append(message)
        return True

    # -------------------------------------------------------------------------
    # Internal: Helpers
    # -------------------------------------------------------------------------

    def _visible_messages(self) -> list[Message]:
        active = self._active_session_id
        if active is not None and active in self._sessions:
            return self._sessions[active].messages
        return self._detached_messages

    def _surface(self, notice: Notice) -> None:
        _LOGGER.warning("Request %s failed: %s %s", notice.method, notice.code, notice.message)
        self._notices.append(notice)
        for callback in list(self._notice_callbacks):
            try:
                callback(notice)
            except Exception as err:
                _LOGGER.exception("Notice callback error: %s", err)

    def _notify_change(self) -> None:
        for callback in list(self._change_callbacks):
            try:
                callback()
            except Exception as err:
                _LOGGER.exception("Change callback error: %s", err)
