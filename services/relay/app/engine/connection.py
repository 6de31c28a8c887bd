from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the engine needs from a peer connection."""

    remote_addr: str

    @property
    def is_open(self) -> bool: ...

    async def send(self, event: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class WebSocketConnection:
    """Adapts a FastAPI ``WebSocket`` to :class:`Connection`.

    Sends are fire-and-forget: an event for a closed socket is dropped and a
    failed send marks the connection closed instead of raising.
    """

    def __init__(self, websocket: WebSocket, remote_addr: str) -> None:
        self._ws = websocket
        self.remote_addr = remote_addr
        self._closed = False

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send(self, event: Dict[str, Any]) -> None:
        if not self.is_open:
            return
        try:
            await self._ws.send_json(event)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug("Dropping %s to %s: %s", event.get("type"), self.remote_addr, exc)
            self._closed = True

    async def close(self) -> None:
        if not self.is_open:
            self._closed = True
            return
        self._closed = True
        try:
            await self._ws.close()
        except (RuntimeError, OSError) as exc:
            logger.debug("Close of %s failed: %s", self.remote_addr, exc)


async def notify(conn: Optional[Connection], payload: Dict[str, Any]) -> None:
    """Send ``payload`` if ``conn`` exists and is open; otherwise drop it."""
    if conn is not None and conn.is_open:
        await conn.send(payload)
