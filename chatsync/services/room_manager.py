# chatsync/services/room_manager.py

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from chatsync.core.errors import SubscriptionError, TransportError
from chatsync.models.models import RealtimeEvent, event_room_id, wire_id
from chatsync.services.connection_manager import ConnectionManager
from chatsync.services.realtime import Connection, EventHandler

logger = logging.getLogger(__name__)

RoomEventHandler = Callable[[dict], Any]

# ============================================================================
# ROOM SUBSCRIPTION
# ============================================================================

class RoomSubscription:
    """
    One open room view's registration on the real-time connection.

    Handlers are wrapped so they only see events for this room and only
    while the subscription is active. An event naming another room is
    dropped; one naming no room is delivered, since the server only sends
    it to sockets that joined the room.

    ``joined`` turns true once the join signal went out. Handlers are
    registered before that, so a failed join can be retried without
    registering them twice. ``stop()`` is synchronous: once it
    returns, no further event reaches the handlers, even one already queued
    in the connection's dispatch loop.

    Event routing:
        new_message                -> on_message
        user_joined / user_left    -> on_membership
        presence_update            -> on_presence
    """

    def __init__(
        self,
        room_id: str,
        connection: Connection,
        on_message: RoomEventHandler,
        on_membership: RoomEventHandler,
        on_presence: RoomEventHandler,
    ) -> None:
        self.room_id = room_id
        self.connection = connection
        self.joined_at: Optional[datetime] = None
        self.active = False
        self.joined = False
        self._bindings: List[Tuple[RealtimeEvent, EventHandler]] = [
            (RealtimeEvent.NEW_MESSAGE, self._scoped(on_message)),
            (RealtimeEvent.USER_JOINED, self._scoped(on_membership)),
            (RealtimeEvent.USER_LEFT, self._scoped(on_membership)),
            (RealtimeEvent.PRESENCE_UPDATE, self._scoped(on_presence)),
        ]

    def _scoped(self, handler: RoomEventHandler) -> EventHandler:
        def scoped(data: Any) -> Any:
            if not self.active:
                return None
            # Events naming no room are scoped by the server-side room already
            target = event_room_id(data)
            if target is not None and target != self.room_id:
                return None
            return handler(data)
        return scoped

    def start(self) -> None:
        for event, handler in self._bindings:
            self.connection.on(event, handler)
        self.active = True

    def stop(self) -> None:
        self.active = False
        for event, handler in self._bindings:
            self.connection.off(event, handler)


# ============================================================================
# ROOM SUBSCRIPTION MANAGER
# ============================================================================

class RoomSubscriptionManager:
    """
    Tracks which rooms this client is subscribed to on the current connection.

    Data Structures:
        subscriptions: Maps room_id -> RoomSubscription
                       Example: {"3": <RoomSubscription room=3>}

    A subscription made on an earlier connection (before a logout/login
    cycle) is stale: the backend already dropped it with that connection,
    so entering the room again subscribes afresh.

    This class does no business logic: events are forwarded verbatim to the
    handlers the room view supplied.
    """

    def __init__(self, connections: ConnectionManager) -> None:
        self.connections = connections
        # Map: room_id -> subscription
        self.subscriptions: Dict[str, RoomSubscription] = {}

    def get(self, room_id: str) -> Optional[RoomSubscription]:
        subscription = self.subscriptions.get(room_id)
        if subscription and subscription.connection is self.connections.connection:
            return subscription
        return None

    async def enter(
        self,
        room_id: str,
        on_message: RoomEventHandler,
        on_membership: RoomEventHandler,
        on_presence: RoomEventHandler,
    ) -> RoomSubscription:
        """
        Subscribe to a room and announce the join.

        Args:
            room_id: Room to subscribe to
            on_message: Receives new_message payloads for this room
            on_membership: Receives user_joined / user_left payloads
            on_presence: Receives presence_update payloads

        Entering a room whose earlier join signal failed sends the join
        again, reusing the handlers already registered.

        Returns:
            The room's subscription (the existing one if already entered)

        Raises:
            SubscriptionError: no live connection, or the join signal failed.
                When the join signal fails the handlers stay registered.
        """
        connection = self.connections.connection
        if connection is None:
            raise SubscriptionError(room_id, "join", "no real-time connection")

        subscription = self.get(room_id)
        if subscription is not None and subscription.joined:
            logger.debug(f"Already subscribed to room {room_id}")
            return subscription

        if subscription is None:
            stale = self.subscriptions.pop(room_id, None)
            if stale is not None:
                stale.stop()

            subscription = RoomSubscription(room_id, connection, on_message, on_membership, on_presence)
            subscription.start()
            self.subscriptions[room_id] = subscription

        await self._join(subscription)
        return subscription

    async def _join(self, subscription: RoomSubscription) -> None:
        room_id = subscription.room_id
        try:
            await subscription.connection.emit(RealtimeEvent.JOIN_GROUP, wire_id(room_id))
        except TransportError as e:
            raise SubscriptionError(room_id, "join", str(e)) from e

        subscription.joined = True
        subscription.joined_at = datetime.now(timezone.utc)
        logger.info(f"→ Joined room {room_id}")

    async def leave(self, room_id: str) -> None:
        """
        Stop delivering the room's events, then announce the leave.

        Raises:
            SubscriptionError: the leave signal failed (handlers are already gone)
        """
        subscription = self.subscriptions.pop(room_id, None)
        if subscription is None:
            return

        subscription.stop()

        connection = subscription.connection
        if connection is not self.connections.connection or not connection.connected:
            # Connection already torn down: the backend counted that as a leave
            logger.debug(f"Connection gone, skipping leave signal for room {room_id}")
            return

        try:
            await connection.emit(RealtimeEvent.LEAVE_GROUP, wire_id(room_id))
        except TransportError as e:
            raise SubscriptionError(room_id, "leave", str(e)) from e

        logger.info(f"← Left room {room_id}")
