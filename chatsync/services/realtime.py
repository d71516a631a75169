# chatsync/services/realtime.py
"""
Real-time channel connections.

A Connection is the one process-wide event transport. Room-level code only
registers and removes handlers on it (``on``/``off``) and emits signals;
opening and closing it belongs to the ConnectionManager.

Handlers are kept in the Connection itself rather than in the underlying
client library so that a handler can be removed individually: python-socketio
only supports one handler per event and no removal.
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import socketio
from socketio.exceptions import ConnectionError as SocketConnectError, SocketIOError

from chatsync.core.config import settings
from chatsync.core.errors import TransportError
from chatsync.models.models import INBOUND_EVENTS

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


def event_name(event: Any) -> str:
    """Plain event name for a RealtimeEvent member or a string."""
    return event.value if isinstance(event, Enum) else str(event)


# ============================================================================
# CONNECTION BASE
# ============================================================================

class Connection:
    """
    Base class for a real-time connection.

    Subclasses implement ``connect``, ``disconnect``, ``emit`` and the
    ``connected`` property, and call ``dispatch`` for every inbound event.
    """

    def __init__(self) -> None:
        # Map: event name -> handlers in registration order
        self._handlers: Dict[str, List[EventHandler]] = {}

    @property
    def connected(self) -> bool:
        raise NotImplementedError

    async def connect(self) -> None:
        raise NotImplementedError

    async def disconnect(self) -> None:
        raise NotImplementedError

    async def emit(self, event: str, payload: Any) -> None:
        raise NotImplementedError

    def on(self, event: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``event``. Registering the same handler twice is a no-op."""
        handlers = self._handlers.setdefault(event_name(event), [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name(event))
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._handlers.get(event_name(event), []))
        return sum(len(h) for h in self._handlers.values())

    async def dispatch(self, event: str, data: Any) -> None:
        """
        Deliver an inbound event to every handler registered for it.

        Handlers run in registration order. A failing handler is logged and
        does not prevent the others from running.
        """
        # Copy: a handler may deregister itself (or others) while running
        for handler in list(self._handlers.get(event_name(event), [])):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Handler for '{event_name(event)}' failed")

    def clear_handlers(self) -> None:
        self._handlers.clear()


# ============================================================================
# SOCKET.IO CONNECTION
# ============================================================================

class SocketIOConnection(Connection):
    """
    Real-time connection over Socket.IO.

    The bearer token is sent in the connection ``auth`` payload. Reconnection
    after a dropped link is left to python-socketio's own reconnect loop.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        socketio_path: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        client: Optional[socketio.AsyncClient] = None,
    ) -> None:
        super().__init__()
        self.url = url or settings.SOCKET_URL
        self.token = token
        self.socketio_path = socketio_path or settings.SOCKETIO_PATH
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.CONNECT_TIMEOUT
        self._sio = client or socketio.AsyncClient(logger=False, engineio_logger=False)

        self._sio.on("connect", self._on_connect)
        self._sio.on("disconnect", self._on_disconnect)
        for event in INBOUND_EVENTS:
            self._sio.on(event.value, self._make_relay(event.value))

    def _make_relay(self, event: str) -> Callable[[Any], Awaitable[None]]:
        async def relay(data: Any = None) -> None:
            await self.dispatch(event, data)
        return relay

    async def _on_connect(self) -> None:
        logger.info(f"✓ Socket connected to {self.url}")

    async def _on_disconnect(self, *args: Any) -> None:
        logger.info(f"✗ Socket disconnected from {self.url}")

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    async def connect(self) -> None:
        try:
            await self._sio.connect(
                self.url,
                auth={"token": self.token} if self.token else None,
                socketio_path=self.socketio_path,
                wait_timeout=self.connect_timeout,
            )
        except SocketConnectError as e:
            raise TransportError(f"Could not connect to {self.url}: {e}") from e

    async def disconnect(self) -> None:
        if self._sio.connected:
            await self._sio.disconnect()
        self.clear_handlers()

    async def emit(self, event: str, payload: Any) -> None:
        if not self._sio.connected:
            raise TransportError(f"Cannot emit '{event_name(event)}': socket not connected")
        try:
            await self._sio.emit(event_name(event), payload)
        except SocketIOError as e:
            raise TransportError(f"Emit '{event_name(event)}' failed: {e}") from e
