# chatsync/models/models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

TEMP_ID_PREFIX = "local-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_id(value: Any) -> Any:
    # Backend ids are integers; everything client-side keys on strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    return value


def wire_id(value: str) -> Any:
    """An id as the backend expects it on the real-time channel (an int when numeric)."""
    return int(value) if value.isdigit() else value


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


# ============================================================================
# ENUMS
# ============================================================================

class MessageOrigin(str, Enum):
    """Where a visible message currently stands.

    Attributes:
        CONFIRMED: Known to the server, carries a permanent id.
        OPTIMISTIC: Shown locally before the send request resolved.
    """
    CONFIRMED = "confirmed"
    OPTIMISTIC = "optimistic"


class Presence(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class RealtimeEvent(str, Enum):
    """Event names on the real-time channel."""
    # Outbound
    JOIN_GROUP = "join_group"
    LEAVE_GROUP = "leave_group"
    SEND_MESSAGE = "send_message"
    # Inbound
    NEW_MESSAGE = "new_message"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    PRESENCE_UPDATE = "presence_update"


INBOUND_EVENTS = (
    RealtimeEvent.NEW_MESSAGE,
    RealtimeEvent.USER_JOINED,
    RealtimeEvent.USER_LEFT,
    RealtimeEvent.PRESENCE_UPDATE,
)


# ============================================================================
# REST PAYLOADS
# ============================================================================

class User(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "userId", "user_id"))
    username: str = ""
    email: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _as_id(value)


class AuthResponse(BaseModel):
    token: str
    user: Optional[User] = None


class Room(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: Optional[str] = ""
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    member_count: int = 0

    @field_validator("id", "created_by", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _as_id(value)


class Message(BaseModel):
    """A chat message as shown in a room.

    The backend uses two shapes: REST history rows (``user_id``,
    ``created_at``) and real-time events (``userId``, sometimes no timestamp).
    Both validate into this model.

    Attributes:
        id: Permanent server id, or a ``local-`` temporary id while optimistic.
        room_id: Room this message belongs to (absent in some history rows).
        author_id: Sender's user id.
        author_name: Sender's display name.
        content: Message text.
        created_at: Server timestamp, or local receive time when missing.
        origin: confirmed or optimistic.
        client_id: Correlation id generated by the sending client.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    room_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("room_id", "roomId", "group_id", "groupId"),
    )
    author_id: str = Field(
        default="",
        validation_alias=AliasChoices("author_id", "user_id", "userId"),
    )
    author_name: str = Field(
        default="Unknown",
        validation_alias=AliasChoices("author_name", "username", "authorName"),
    )
    content: str
    created_at: datetime = Field(
        default_factory=_utcnow,
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    origin: MessageOrigin = MessageOrigin.CONFIRMED
    client_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("client_id", "clientId"),
    )

    @field_validator("id", "room_id", "author_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _as_id(value)

    @field_validator("created_at", mode="before")
    @classmethod
    def _missing_timestamp(cls, value: Any) -> Any:
        return _utcnow() if value in (None, "") else value

    @property
    def is_optimistic(self) -> bool:
        return self.origin == MessageOrigin.OPTIMISTIC

    def to_wire(self) -> dict:
        """Serialize the way the backend's real-time channel relays messages."""
        return {
            "id": wire_id(self.id),
            "user_id": wire_id(self.author_id),
            "username": self.author_name,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "clientId": self.client_id,
        }


class RoomMember(BaseModel):
    """One row of a room's member list (the RoomMemberView projection)."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(validation_alias=AliasChoices("user_id", "id", "userId"))
    username: str = ""
    presence: Presence = Field(
        default=Presence.OFFLINE,
        validation_alias=AliasChoices("presence", "status"),
    )

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _as_id(value)

    @field_validator("presence", mode="before")
    @classmethod
    def _unknown_is_offline(cls, value: Any) -> Any:
        if isinstance(value, Presence):
            return value
        return Presence.ONLINE if str(value).lower() == "online" else Presence.OFFLINE


class Reader(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(validation_alias=AliasChoices("user_id", "id", "userId"))
    username: str = ""
    read_at: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _as_id(value)


class RoomSnapshot(BaseModel):
    """Authoritative state of a room as returned by one successful load."""
    room: Room
    messages: List[Message]
    members: List[RoomMember]


# ============================================================================
# REAL-TIME PAYLOAD HELPERS
# ============================================================================

def event_room_id(payload: Any) -> Optional[str]:
    """
    Extract the room an inbound real-time event is addressed to.

    Accepts the flat shape ({"groupId": 3, ...}) and the relayed
    send_message shape ({"groupId": 3, "message": {...}}).

    Returns:
        The room id as a string, or None when the payload names no room.
    """
    if not isinstance(payload, dict):
        return None
    for key in ("groupId", "group_id", "roomId", "room_id"):
        if payload.get(key) is not None:
            return str(payload[key])
    nested = payload.get("message")
    if isinstance(nested, dict):
        return event_room_id(nested)
    return None


def message_from_event(payload: dict, room_id: str) -> Message:
    """Validate a new_message event into a confirmed Message for ``room_id``."""
    body = payload.get("message") if isinstance(payload.get("message"), dict) else payload
    message = Message.model_validate(body)
    return message.model_copy(update={"room_id": room_id, "origin": MessageOrigin.CONFIRMED})
