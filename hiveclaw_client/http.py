"""HTTP client for the HiveClaw gateway REST endpoints."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from .errors import (
    HiveClawConnectionError,
    HiveClawResponseError,
    HiveClawTimeout,
)
from .models import Session

_LOGGER = logging.getLogger(__name__)


async def _read_json(resp: aiohttp.ClientResponse, what: str) -> Any:
    """Parse a response body, mapping an unparsable body onto the client errors."""
    try:
        return await resp.json()
    except ValueError as err:
        raise HiveClawResponseError(resp.status, f"{what} response is not valid JSON") from err


class GatewayHttpClient:
    """HTTP client wrapper for the gateway's REST API.

    The REST surface mirrors the WebSocket methods and is useful for
    one-shot calls (health checks, scripted chat) without a live socket.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        token: str | None = None,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._token = token

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _auth_headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def health(self) -> dict[str, Any]:
        """Fetch gateway status from /api/health.

        Returns:
            Health document, e.g. ``{"status": "ok", "version": "0.1.0", ...}``
        """
        url = self._url("/api/health")
        try:
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=5),
            ) as resp:
                if resp.status != 200:
                    raise HiveClawResponseError(resp.status, "Health check failed")
                data: dict[str, Any] = await _read_json(resp, "Health")
                return data
        except TimeoutError as err:
            raise HiveClawTimeout("Health request timed out") from err
        except aiohttp.ClientError as err:
            raise HiveClawConnectionError("Health request failed") from err

    async def list_sessions(self) -> list[Session]:
        """Fetch all sessions from /api/sessions.

        Summaries that cannot be parsed are skipped.
        """
        url = self._url("/api/sessions")
        try:
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=10),
            ) as resp:
                if resp.status != 200:
                    raise HiveClawResponseError(resp.status, "Session listing failed")
                data = await _read_json(resp, "Session listing")
        except TimeoutError as err:
            raise HiveClawTimeout("Session listing timed out") from err
        except aiohttp.ClientError as err:
            raise HiveClawConnectionError("Session listing failed") from err

        sessions: list[Session] = []
        for raw in data or []:
            try:
                sessions.append(Session.from_wire(raw))
            except ValueError as err:
                _LOGGER.warning("Skipping invalid session summary: %s", err)
        return sessions

    async def chat(self, session_id: str, message: str) -> str:
        """Send a chat message through POST /api/chat.

        Returns:
            The assistant's response text.
        """
        url = self._url("/api/chat")
        try:
            async with self._session.post(
                url,
                json={"sessionId": session_id, "message": message},
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=60),
            ) as resp:
                if resp.status != 200:
                    raise HiveClawResponseError(resp.status, "Chat request failed")
                data = await _read_json(resp, "Chat")
        except TimeoutError as err:
            raise HiveClawTimeout("Chat request timed out") from err
        except aiohttp.ClientError as err:
            raise HiveClawConnectionError("Chat request failed") from err

        response = data.get("response") if isinstance(data, dict) else None
        if not isinstance(response, str):
            raise HiveClawResponseError(resp.status, "Chat response has no text")
        return response
