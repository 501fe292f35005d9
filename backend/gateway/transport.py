"""Transport abstraction — the gateway only ever talks to this surface.

``WebSocketTransport`` adapts a FastAPI/Starlette ``WebSocket``.
"""
import logging
from typing import Protocol, runtime_checkable

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class WebSocketTransport:
    """Starlette WebSocket wrapped as a gateway Transport."""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_text(self, data: str) -> None:
        await self._ws.send_text(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.is_open:
            return
        self._closed = True
        try:
            await self._ws.close(code=code, reason=reason)
        except RuntimeError as e:
            # Peer already went away between the state check and the close frame
            logger.debug("WS close after disconnect: code=%d error=%s", code, str(e))
