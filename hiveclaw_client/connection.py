"""Connection manager for the HiveClaw gateway WebSocket.

Owns one logical connection to a single endpoint. It handles:
- Connection lifecycle (start/stop) and the ConnectionState machine
- Automatic reconnection with capped exponential backoff
- Fire-and-forget sending through a per-connection writer task
- Decoding inbound frames into a single envelope stream

Usage:
    manager = ConnectionManager("ws://localhost:8080/ws")
    manager.on_state_changed(my_state_handler)
    await manager.start()
    async for envelope in manager.envelopes():
        ...
    await manager.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import TYPE_CHECKING

from .errors import DecodeError, HiveClawClientError, HiveClawHandshakeError, NotConnectedError
from .protocol import Envelope, encode
from .transport.ws_client import HiveClawWsClient, HiveClawWsMessageType

if TYPE_CHECKING:
    from .config import ClientConfig

_LOGGER = logging.getLogger(__name__)

DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

# Exponent clamp keeps the delay a finite float for very large attempt counts.
_MAX_BACKOFF_EXPONENT = 64


class ConnectionState(Enum):
    """Lifecycle states of the gateway connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.CONNECTING, ConnectionState.CLOSED}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.OPEN, ConnectionState.FAILED, ConnectionState.CLOSED}
    ),
    ConnectionState.OPEN: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING, ConnectionState.CLOSED}),
}


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_RETRY_BASE_DELAY,
    cap: float = DEFAULT_RETRY_MAX_DELAY,
) -> float:
    """Return the reconnection delay for a zero-based attempt number.

    ``min(base * 2**attempt, cap)``: non-decreasing in ``attempt`` and never
    above ``cap``.
    """
    if attempt < 0:
        raise ValueError("attempt must not be negative")
    return min(base * (2.0 ** min(attempt, _MAX_BACKOFF_EXPONENT)), cap)


class ConnectionManager:
    """Owns the gateway WebSocket and its reconnection policy."""

    def __init__(
        self,
        url: str,
        *,
        ping_interval: int | None = 20,
        connect_timeout: float = 15.0,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        """Initialize the manager.

        Args:
            url: Gateway WebSocket endpoint
            ping_interval: Keepalive ping interval (seconds, None disables)
            connect_timeout: Timeout for a single connection attempt (seconds)
            retry_base_delay: Delay before the first reconnection (seconds)
            retry_max_delay: Maximum reconnection delay (seconds)
            max_reconnect_attempts: Reconnections scheduled before giving up
        """
        self._url = url
        self._ping_interval = ping_interval
        self._connect_timeout = connect_timeout
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._max_reconnect_attempts = max_reconnect_attempts

        # Connection state
        self._state = ConnectionState.IDLE
        self._ws: HiveClawWsClient | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._retry_attempts = 0
        self._shutdown_requested = False

        # Outbound frames for the current connection only
        self._outbox: asyncio.Queue[bytes] | None = None

        # Inbound envelopes; None marks the end of the stream
        self._inbound: asyncio.Queue[Envelope | None] = asyncio.Queue()
        self._stream_ended = False

        self._state_callbacks: list[Callable[[ConnectionState], None]] = []

    @classmethod
    def from_config(cls, config: ClientConfig) -> ConnectionManager:
        """Create a manager from a loaded ClientConfig."""
        return cls(
            config.url,
            ping_interval=config.ping_interval,
            connect_timeout=config.connect_timeout,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def retry_attempts(self) -> int:
        """Reconnections scheduled since the last successful open."""
        return self._retry_attempts

    def on_state_changed(
        self, callback: Callable[[ConnectionState], None]
    ) -> Callable[[], None]:
        """Register a connection state observer. Returns a removal function."""
        self._state_callbacks.append(callback)

        def remove() -> None:
            try:
                self._state_callbacks.remove(callback)
            except ValueError:
                pass

        return remove

    async def start(self) -> bool:
        """Begin connecting. Idempotent.

        Returns:
            True if the connection is open when this call returns
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return self._state is ConnectionState.OPEN

        # An explicit start supersedes any scheduled retry
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None

        self._shutdown_requested = False
        self._retry_attempts = 0
        if self._stream_ended:
            self._inbound = asyncio.Queue()
            self._stream_ended = False

        return await self._connect()

    def send(self, envelope: Envelope) -> None:
        """Queue an envelope for transmission without waiting for the network.

        Raises:
            NotConnectedError: If the connection is not open. The envelope is
                dropped, not buffered.
        """
        if self._state is not ConnectionState.OPEN or self._outbox is None:
            _LOGGER.warning(
                "[%s] Not connected, dropping %s", self._url, type(envelope).__name__
            )
            raise NotConnectedError("WebSocket is not connected")

        self._outbox.put_nowait(encode(envelope))

    async def drain(self) -> None:
        """Wait until frames queued on the current connection are written."""
        if self._outbox is not None:
            await self._outbox.join()

    async def stop(self) -> None:
        """Shut down permanently until the next start(). Idempotent."""
        if not self._shutdown_requested:
            _LOGGER.info("[%s] Stopping connection", self._url)
        self._shutdown_requested = True
        # Exhaust the reconnect budget so nothing schedules another attempt
        self._retry_attempts = self._max_reconnect_attempts

        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel_task(self._listen_task)
        self._listen_task = None
        await self._cancel_task(self._writer_task)
        self._writer_task = None

        ws = self._ws
        self._ws = None
        self._discard_outbox()
        if ws is not None:
            await self._close_transport(ws)

        if self._state is not ConnectionState.CLOSED:
            self._set_state(ConnectionState.CLOSED)

        if not self._stream_ended:
            self._inbound.put_nowait(None)
            self._stream_ended = True

    async def envelopes(self) -> AsyncIterator[Envelope]:
        """Yield decoded inbound envelopes in arrival order until stop()."""
        queue = self._inbound
        while True:
            envelope = await queue.get()
            if envelope is None:
                return
            yield envelope

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify observers."""
        if self._state is state:
            return
        if state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid connection transition {self._state.value} -> {state.value}")

        _LOGGER.debug("[%s] State: %s -> %s", self._url, self._state.value, state.value)
        self._state = state
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception as err:
                _LOGGER.exception("[%s] State callback error: %s", self._url, err)

    async def _connect(self) -> bool:
        """Run one connection attempt."""
        self._set_state(ConnectionState.CONNECTING)
        _LOGGER.info(
            "[%s] Connecting (attempt #%d)", self._url, self._retry_attempts + 1
        )

        ws_client = HiveClawWsClient()
        try:
            await ws_client.connect(
                self._url,
                ping_interval=self._ping_interval,
                timeout=self._connect_timeout,
            )
        except asyncio.CancelledError:
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.FAILED)
            raise
        except HiveClawClientError as err:
            if self._shutdown_requested:
                return False
            if isinstance(err, HiveClawHandshakeError):
                _LOGGER.error("[%s] WebSocket handshake failed: %s", self._url, err)
            else:
                _LOGGER.warning("[%s] Connection failed: %s", self._url, err)
            self._set_state(ConnectionState.FAILED)
            self._handle_connection_failure()
            return False

        if self._shutdown_requested:
            # stop() won the race; never leave a live socket behind
            _LOGGER.debug("[%s] Connection aborted: shutdown requested", self._url)
            await self._close_transport(ws_client)
            return False

        self._ws = ws_client
        self._outbox = asyncio.Queue()
        self._retry_attempts = 0
        self._set_state(ConnectionState.OPEN)
        _LOGGER.info("[%s] WebSocket connected, starting listener", self._url)

        self._writer_task = asyncio.create_task(self._write_loop(ws_client, self._outbox))
        self._listen_task = asyncio.create_task(self._listen(ws_client))
        return True

    def _handle_connection_failure(self) -> None:
        """Schedule a reconnection with exponential backoff, or give up."""
        current = asyncio.current_task()
        if self._shutdown_requested:
            return
        if self._reconnect_task is not None and self._reconnect_task is not current:
            return

        if self._retry_attempts >= self._max_reconnect_attempts:
            _LOGGER.warning(
                "[%s] Giving up after %d reconnection attempts",
                self._url,
                self._retry_attempts,
            )
            self._reconnect_task = None
            self._set_state(ConnectionState.CLOSED)
            return

        delay = backoff_delay(
            self._retry_attempts, self._retry_base_delay, self._retry_max_delay
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(delay))
        self._retry_attempts += 1

        _LOGGER.info(
            "[%s] Reconnecting in %.1fs (attempt %d/%d)",
            self._url,
            delay,
            self._retry_attempts,
            self._max_reconnect_attempts,
        )

    async def _reconnect_after_delay(self, delay: float) -> None:
        """Reconnect after delay."""
        try:
            await asyncio.sleep(delay)
            if not self._shutdown_requested:
                await self._connect()
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Reconnect cancelled", self._url)
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    def _connection_lost(self, ws_client: HiveClawWsClient) -> None:
        """Tear down after an unexpected close and schedule reconnection."""
        if self._ws is not ws_client:
            return

        self._ws = None
        self._listen_task = None
        if self._writer_task is not None:
            self._writer_task.cancel()
            self._writer_task = None
        self._discard_outbox()

        self._set_state(ConnectionState.CLOSED)
        self._handle_connection_failure()

    # -------------------------------------------------------------------------
    # Internal: I/O tasks
    # -------------------------------------------------------------------------

    async def _listen(self, ws_client: HiveClawWsClient) -> None:
        """Decode inbound frames onto the envelope stream."""
        message_count = 0
        reconnect_required = False

        try:
            async for msg in ws_client:
                if msg.type is HiveClawWsMessageType.TEXT:
                    message_count += 1
                    try:
                        envelope = ws_client.decode_envelope(msg)
                    except DecodeError as err:
                        _LOGGER.warning(
                            "[%s] Dropping %s frame: %s", self._url, err.kind.value, err
                        )
                        continue
                    self._inbound.put_nowait(envelope)

                elif msg.type is HiveClawWsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by gateway", self._url)
                    break

                elif msg.type is HiveClawWsMessageType.ERROR:
                    _LOGGER.warning("[%s] WebSocket error", self._url)
                    break

            reconnect_required = True

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d messages)", self._url, message_count
            )
            raise
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected listener error: %s", self._url, err)
            reconnect_required = True
            await self._close_transport(ws_client)
        finally:
            if reconnect_required and not self._shutdown_requested:
                self._connection_lost(ws_client)

    async def _write_loop(
        self, ws_client: HiveClawWsClient, outbox: asyncio.Queue[bytes]
    ) -> None:
        """Write queued frames in order."""
        while True:
            frame = await outbox.get()
            try:
                await ws_client.send_frame(frame)
            except HiveClawClientError as err:
                _LOGGER.warning("[%s] Failed to send frame: %s", self._url, err)
            finally:
                outbox.task_done()

    def _discard_outbox(self) -> None:
        """Drop frames queued for a connection that no longer exists."""
        outbox = self._outbox
        self._outbox = None
        if outbox is None:
            return
        dropped = 0
        while not outbox.empty():
            outbox.get_nowait()
            outbox.task_done()
            dropped += 1
        if dropped:
            _LOGGER.debug("[%s] Discarded %d unsent frames", self._url, dropped)

    async def _close_transport(self, ws_client: HiveClawWsClient) -> None:
        try:
            await asyncio.wait_for(ws_client.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self._url)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
