# chatsync/services/chat_room.py

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Tuple

from chatsync.core.config import settings
from chatsync.core.errors import (
    ApiError,
    EngineStateError,
    LoadError,
    SendError,
    SubscriptionError,
    TransportError,
)
from chatsync.core.state import Session
from chatsync.models.models import Message, RealtimeEvent, Room, RoomMember, RoomSnapshot, wire_id
from chatsync.services.api_client import ApiClient
from chatsync.services.history_loader import HistoryLoader
from chatsync.services.presence import MembersListener, PresenceSynchronizer
from chatsync.services.reconciler import ChangeListener, MessageReconciler, SendState
from chatsync.services.room_manager import RoomSubscriptionManager

logger = logging.getLogger(__name__)


class RoomStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


class ChatRoom:
    """
    Everything one open room view needs, for as long as it is open.

    On open, the real-time subscription and the REST load start together.
    Events that arrive before the load finishes are held by the reconciler
    and applied right after the history page.

    Lifecycle:
        room = ChatRoom("3", session, api, loader, subscriptions)
        await room.open()          # loading -> ready | error
        await room.send("hello")   # optimistic, then confirmed or rolled back
        await room.close()         # stops event processing, then leaves

    Error Handling:
        - LoadError: status becomes error, no partial data; ``retry()`` loads again
        - SendError: optimistic entry already rolled back; safe to send again
        - SubscriptionError: logged and kept in ``subscription_error``; REST
          sends keep working without the real-time channel, and ``rejoin()``
          (or ``retry()`` after a load error) sends the join again
    """

    def __init__(
        self,
        room_id: str,
        session: Session,
        api: ApiClient,
        loader: HistoryLoader,
        subscriptions: RoomSubscriptionManager,
        member_refresh_debounce: Optional[float] = None,
        on_messages: Optional[ChangeListener] = None,
        on_members: Optional[MembersListener] = None,
    ) -> None:
        self.room_id = str(room_id)
        self.session = session
        self.api = api
        self.loader = loader
        self.subscriptions = subscriptions

        self.status = RoomStatus.IDLE
        self.room: Optional[Room] = None
        self.error: Optional[LoadError] = None
        self.subscription_error: Optional[SubscriptionError] = None
        self._history_offset = 0

        self.engine = MessageReconciler(
            self.room_id,
            user_id=session.user_id or "",
            username=session.username,
            on_change=on_messages,
        )
        debounce = (
            member_refresh_debounce
            if member_refresh_debounce is not None
            else settings.MEMBER_REFRESH_DEBOUNCE
        )
        self.presence = PresenceSynchronizer(
            self.room_id, loader.fetch_members, debounce=debounce, on_change=on_members
        )

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.engine.messages

    @property
    def members(self) -> Tuple[RoomMember, ...]:
        return self.presence.members

    # ------------------------------------------------------------------------
    # Open / retry
    # ------------------------------------------------------------------------

    async def open(self) -> RoomSnapshot:
        """
        Subscribe and load the room concurrently.

        Raises:
            LoadError: the room could not be loaded (status is error)
        """
        if self.status != RoomStatus.IDLE:
            raise EngineStateError(f"Room {self.room_id} is already {self.status.value}")

        _, snapshot = await asyncio.gather(self._subscribe(), self._load())
        return snapshot

    async def retry(self) -> RoomSnapshot:
        """Load again after a LoadError. Subscribes too if that failed earlier."""
        if self.status != RoomStatus.ERROR:
            raise EngineStateError(f"Room {self.room_id} is {self.status.value}, nothing to retry")
        if self.subscription_error is not None or self.subscriptions.get(self.room_id) is None:
            _, snapshot = await asyncio.gather(self._subscribe(), self._load())
            return snapshot
        return await self._load()

    async def rejoin(self) -> bool:
        """
        Send the room's join signal again after it failed.

        Returns:
            True when the room is now joined on the real-time channel.
        """
        if self.status == RoomStatus.CLOSED:
            return False
        await self._subscribe()
        return self.subscription_error is None

    async def _subscribe(self) -> None:
        try:
            await self.subscriptions.enter(
                self.room_id,
                on_message=self.engine.apply_event,
                on_membership=self.presence.handle_event,
                on_presence=self.presence.handle_event,
            )
            self.subscription_error = None
        except SubscriptionError as e:
            self.subscription_error = e
            logger.warning(f"Real-time updates unavailable for room {self.room_id}: {e}")

    async def _load(self) -> RoomSnapshot:
        self.status = RoomStatus.LOADING
        self.error = None
        try:
            snapshot = await self.loader.load(self.room_id)
        except LoadError as e:
            if self.status != RoomStatus.CLOSED:
                self.status = RoomStatus.ERROR
                self.error = e
            raise

        if self.status == RoomStatus.CLOSED:
            return snapshot

        self.room = snapshot.room
        self.engine.seed(snapshot.messages)
        self.presence.replace(snapshot.members)
        self._history_offset = len(snapshot.messages)
        self.status = RoomStatus.READY
        return snapshot

    # ------------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------------

    async def send(self, content: str) -> Optional[Message]:
        """
        Send a message: show it immediately, then confirm or roll it back.

        Returns:
            The confirmed message, or None for blank content.

        Raises:
            SendError: the room is not ready, or the send request failed
                (the optimistic entry is gone again)
        """
        if not content or not content.strip():
            return None
        if self.status != RoomStatus.READY:
            raise SendError(self.room_id, content, ValueError(f"room is {self.status.value}"))

        pending = self.engine.add_optimistic(content)
        logger.debug(f"📨 Sending to room {self.room_id} (client id {pending.client_id})")

        try:
            response = await self.api.send_message(self.room_id, content, client_id=pending.client_id)
        except ApiError as e:
            if pending.state == SendState.CONFIRMED:
                # The echo already proved the server stored it
                logger.warning(f"Send response failed after echo confirmed it: {e}")
                return self.engine.get(pending.message_id)
            self.engine.fail(pending)
            logger.error(f"Send failed in room {self.room_id}: {e}")
            raise SendError(self.room_id, content, e) from e

        confirmed = self.engine.confirm(pending, response)
        if confirmed is not None:
            await self._broadcast(confirmed)
        return confirmed

    async def _broadcast(self, message: Message) -> None:
        """Relay a confirmed message to the other participants over the real-time channel."""
        connection = self.session.connection
        if connection is None:
            return
        try:
            await connection.emit(
                RealtimeEvent.SEND_MESSAGE,
                {"groupId": wire_id(self.room_id), "message": message.to_wire()},
            )
        except TransportError as e:
            logger.warning(f"Real-time broadcast failed for message {message.id}: {e}")

    # ------------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------------

    async def load_earlier(self) -> List[Message]:
        """
        Fetch the next older history page and put it in front of the list.

        Returns:
            The messages added (empty when history is exhausted).
        """
        if self.status != RoomStatus.READY:
            return []
        page = await self.loader.load_page(self.room_id, offset=self._history_offset)
        self._history_offset += len(page)
        return self.engine.prepend_history(page)

    # ------------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop all event processing for the room, then announce the leave."""
        if self.status == RoomStatus.CLOSED:
            return
        self.status = RoomStatus.CLOSED
        self.engine.close()
        self.presence.close()

        try:
            await self.subscriptions.leave(self.room_id)
        except SubscriptionError as e:
            logger.warning(f"Leave signal failed for room {self.room_id}: {e}")
