# chatsync/services/reconciler.py
"""Message reconciliation for one open room.

This module merges the three sources of a room's message list into one
ordered, duplicate-free sequence:

    - the REST history page (the seed)
    - messages the local user sends, shown optimistically before the server
      confirms them
    - new_message events from the real-time channel, delivered at least once
      and possibly before, after or instead of the REST confirmation

Ordering:
    Display order is insertion order. Nothing is re-sorted by timestamp:
    arrival order is the best approximation of causal order available, and
    re-sorting would make messages jump around as late ones arrive.

Duplicates:
    Suppressed by id equality only. An optimistic entry has a temporary
    ``local-`` id until its send is confirmed, so it never collides with a
    server id.

Sends:
    Each optimistic send is a PendingSend that moves exactly once, from
    pending to confirmed (visible with its permanent id) or to discarded
    (removed from the list). It carries a client-generated correlation id
    that is sent to the server and relayed on the real-time channel, so an
    echo that overtakes the REST response still resolves the right entry.

Thread Safety:
    Designed for a single asyncio event loop. Every method is synchronous,
    so inputs are applied strictly in the order they are called.
"""
from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from chatsync.core.errors import EngineStateError, SendError
from chatsync.models.models import Message, MessageOrigin, message_from_event, new_temp_id

logger = logging.getLogger(__name__)

# Events kept while the room's history is still loading
MAX_BUFFERED_EVENTS = 500

ChangeListener = Callable[[Tuple[Message, ...]], None]


class SendState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISCARDED = "discarded"


class PendingSend:
    """State machine for one optimistic send: pending -> confirmed | discarded."""

    def __init__(self, client_id: str, temp_id: str, content: str) -> None:
        self.client_id = client_id
        self.temp_id = temp_id
        self.content = content
        self.state = SendState.PENDING
        self.message_id: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.state != SendState.PENDING

    def confirm(self, message_id: str) -> None:
        if self.state != SendState.PENDING:
            raise EngineStateError(f"Cannot confirm send {self.client_id}: already {self.state.value}")
        self.state = SendState.CONFIRMED
        self.message_id = message_id

    def discard(self) -> None:
        if self.state != SendState.PENDING:
            raise EngineStateError(f"Cannot discard send {self.client_id}: already {self.state.value}")
        self.state = SendState.DISCARDED

    def __repr__(self) -> str:
        return f"PendingSend(client_id={self.client_id!r}, state={self.state.value})"


class MessageReconciler:
    """
    Owns one room's message list for the lifetime of the room view.

    Attributes:
        room_id: Room this list belongs to.
        user_id: Local user, author of every optimistic entry.
        username: Local user's display name.
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        username: Optional[str] = None,
        on_change: Optional[ChangeListener] = None,
        max_buffered: int = MAX_BUFFERED_EVENTS,
    ) -> None:
        self.room_id = room_id
        self.user_id = user_id
        self.username = username or "You"
        self._on_change = on_change

        self._messages: List[Message] = []
        self._ids: set = set()
        # Map: correlation id -> unsettled send
        self._pending: Dict[str, PendingSend] = {}
        self._buffer: Deque[Any] = deque(maxlen=max_buffered)
        self._seeded = False
        self._closed = False

    # ------------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------------

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def seeded(self) -> bool:
        return self._seeded

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_sends(self) -> Tuple[PendingSend, ...]:
        return tuple(self._pending.values())

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def get(self, message_id: str) -> Optional[Message]:
        index = self._index_of(message_id)
        return self._messages[index] if index is not None else None

    def _index_of(self, message_id: str) -> Optional[int]:
        if message_id not in self._ids:
            return None
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.messages)

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        self._ids.add(message.id)

    def _remove_at(self, index: int) -> Message:
        message = self._messages.pop(index)
        self._ids.discard(message.id)
        return message

    # ------------------------------------------------------------------------
    # (a) Seed
    # ------------------------------------------------------------------------

    def seed(self, messages: Iterable[Message]) -> None:
        """
        Install the REST history page. Accepted once, before anything else.

        Real-time events that arrived while history was loading are replayed
        right after, in arrival order, skipping ids the page already has.

        Raises:
            EngineStateError: already seeded
        """
        if self._closed:
            return
        if self._seeded:
            raise EngineStateError(f"Room {self.room_id} is already seeded")

        for message in messages:
            if message.id in self._ids:
                logger.debug(f"Duplicate id {message.id} in history page for room {self.room_id}")
                continue
            self._append(message.model_copy(update={"room_id": self.room_id}))
        self._seeded = True

        buffered = list(self._buffer)
        self._buffer.clear()
        for payload in buffered:
            self._apply(payload)

        logger.debug(
            f"Seeded room {self.room_id} with {len(self._messages)} messages "
            f"({len(buffered)} buffered events replayed)"
        )
        self._notify()

    # ------------------------------------------------------------------------
    # (b) Optimistic send
    # ------------------------------------------------------------------------

    def add_optimistic(self, content: str) -> PendingSend:
        """
        Append a message the local user is sending, before the server has it.

        Returns:
            The PendingSend to hand to ``confirm`` or ``fail`` once the send
            request settles.

        Raises:
            EngineStateError: the room is not seeded yet, or closed
        """
        if self._closed:
            raise EngineStateError(f"Room {self.room_id} is closed")
        if not self._seeded:
            raise EngineStateError(f"Room {self.room_id} is not loaded yet")

        pending = PendingSend(client_id=str(uuid.uuid4()), temp_id=new_temp_id(), content=content)
        self._append(
            Message(
                id=pending.temp_id,
                room_id=self.room_id,
                author_id=self.user_id,
                author_name=self.username,
                content=content,
                created_at=datetime.now(timezone.utc),
                origin=MessageOrigin.OPTIMISTIC,
                client_id=pending.client_id,
            )
        )
        self._pending[pending.client_id] = pending
        self._notify()
        return pending

    # ------------------------------------------------------------------------
    # (c) Send confirmation
    # ------------------------------------------------------------------------

    def confirm(self, pending: PendingSend, response: Any) -> Optional[Message]:
        """
        Resolve an optimistic entry with the server's response to the send.

        Args:
            pending: Handle returned by ``add_optimistic``
            response: Send response body (dict with at least ``id``) or a Message

        Returns:
            The confirmed message as it now appears in the list, or None when
            the room was closed in the meantime.

        Raises:
            SendError: the response carries no message id (entry rolled back)
            EngineStateError: the send was already settled
        """
        if self._closed:
            message_id = self._response_id(response)
            if not pending.settled and message_id is not None:
                pending.confirm(message_id)
            return None
        if pending.settled:
            # An echo carrying the correlation id got here first
            if pending.state == SendState.CONFIRMED:
                return self.get(pending.message_id)
            raise EngineStateError(f"Cannot confirm send {pending.client_id}: already discarded")

        message_id = self._response_id(response)
        if message_id is None:
            self.fail(pending)
            raise SendError(self.room_id, pending.content, ValueError("response has no message id"))

        confirmed = self._resolve(pending, message_id, response)
        self._notify()
        return confirmed

    @staticmethod
    def _response_id(response: Any) -> Optional[str]:
        if isinstance(response, Message):
            return response.id
        if isinstance(response, dict):
            body = response.get("message") if isinstance(response.get("message"), dict) else response
            if body.get("id") is not None:
                return str(body["id"])
        return None

    def _resolve(self, pending: PendingSend, message_id: str, source: Any = None) -> Optional[Message]:
        """Move ``pending`` to confirmed under ``message_id`` and fix up its list entry."""
        pending.confirm(message_id)
        self._pending.pop(pending.client_id, None)

        index = self._index_of(pending.temp_id)
        if message_id in self._ids:
            # The same message is already listed (an echo without correlation
            # id arrived first): keep that entry, drop the optimistic copy.
            if index is not None:
                self._remove_at(index)
            logger.debug(f"Merged send {pending.client_id} into existing message {message_id}")
            return self.get(message_id)

        if index is None:
            return None

        optimistic = self._messages[index]
        update: Dict[str, Any] = {"id": message_id, "origin": MessageOrigin.CONFIRMED}
        created_at = self._source_timestamp(source)
        if created_at is not None:
            update["created_at"] = created_at
        confirmed = optimistic.model_copy(update=update)

        self._ids.discard(optimistic.id)
        self._messages[index] = confirmed
        self._ids.add(message_id)
        return confirmed

    @staticmethod
    def _source_timestamp(source: Any) -> Optional[datetime]:
        if isinstance(source, Message):
            return source.created_at
        if isinstance(source, dict):
            body = source.get("message") if isinstance(source.get("message"), dict) else source
            if body.get("created_at") or body.get("createdAt"):
                try:
                    return Message.model_validate({**body, "content": body.get("content", "")}).created_at
                except ValidationError:
                    return None
        return None

    # ------------------------------------------------------------------------
    # (d) Real-time message event
    # ------------------------------------------------------------------------

    def apply_event(self, payload: Any) -> Optional[Message]:
        """
        Apply a new_message event from the real-time channel.

        Before the seed the event is buffered and replayed after it.

        Returns:
            The message as appended or resolved, or None when the event was
            buffered, dropped as a duplicate, or malformed.
        """
        if self._closed:
            return None
        if not self._seeded:
            self._buffer.append(payload)
            return None

        result = self._apply(payload)
        if result is not None:
            self._notify()
        return result

    def _apply(self, payload: Any) -> Optional[Message]:
        if not isinstance(payload, dict):
            logger.warning(f"Ignoring malformed message event in room {self.room_id}")
            return None
        try:
            message = message_from_event(payload, self.room_id)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed message event in room {self.room_id}: {e}")
            return None

        if message.id in self._ids:
            logger.debug(f"Dropped duplicate message {message.id} in room {self.room_id}")
            return None

        pending = self._pending.get(message.client_id) if message.client_id else None
        if pending is not None:
            # Our own send, echoed before its REST confirmation arrived
            return self._resolve(pending, message.id, message)

        self._append(message)
        return message

    # ------------------------------------------------------------------------
    # (e) Send failure
    # ------------------------------------------------------------------------

    def fail(self, pending: PendingSend) -> None:
        """
        Roll back an optimistic entry whose send failed.

        Raises:
            EngineStateError: the send was already settled
        """
        pending.discard()
        self._pending.pop(pending.client_id, None)
        if self._closed:
            return
        index = self._index_of(pending.temp_id)
        if index is not None:
            self._remove_at(index)
        self._notify()

    # ------------------------------------------------------------------------
    # Older history
    # ------------------------------------------------------------------------

    def prepend_history(self, messages: Iterable[Message]) -> List[Message]:
        """
        Insert an older history page before the current list.

        Returns:
            The messages actually inserted (ids already listed are skipped).
        """
        if self._closed or not self._seeded:
            return []

        older: List[Message] = []
        for message in messages:
            if message.id in self._ids:
                continue
            older.append(message.model_copy(update={"room_id": self.room_id}))
            self._ids.add(message.id)

        if older:
            self._messages[:0] = older
            self._notify()
        return older

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------

    def close(self) -> None:
        """Stop processing. Later inputs are ignored and the list is frozen."""
        self._closed = True
        self._buffer.clear()
        self._on_change = None
