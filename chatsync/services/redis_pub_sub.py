# chatsync/services/redis_pub_sub.py
import asyncio
import json
import logging
from typing import Any, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatsync.core.config import settings
from chatsync.core.errors import TransportError
from chatsync.models.models import RealtimeEvent, event_room_id
from chatsync.services.realtime import Connection, event_name

logger = logging.getLogger(__name__)

CHANNEL_PATTERN = "room:*"


def room_channel(room_id: str) -> str:
    return f"room:{room_id}"


class RedisConnection(Connection):
    """
    Real-time connection over Redis Pub/Sub, for deployments without a
    Socket.IO server.

    Every room is a channel ``room:<id>``. One pattern subscription
    (``room:*``) carries all rooms; events for rooms this client has not
    joined are dropped before dispatch.

    Outbound signals map to publishes:
        join_group   -> user_joined on the room channel
        leave_group  -> user_left on the room channel
        send_message -> new_message on the room channel

    Wire format of every published payload:
        {"event": "<event name>", "data": {..., "groupId": <room id>}}

    Note: a client receives its own publishes back. The reconciliation
    engine drops the echo of a confirmed message by id.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        super().__init__()
        self.url = url or settings.REDIS_URL
        self.user_id = user_id
        self.username = username
        self.client = client
        self.pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._joined: Set[str] = set()

    @property
    def connected(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def connect(self):
        """Establish async connection to Redis and start listening to all room channels."""
        try:
            if self.client is None:
                self.client = redis.from_url(self.url, decode_responses=True)
            await self.client.ping()
            self.pubsub = self.client.pubsub()
            await self.pubsub.psubscribe(CHANNEL_PATTERN)
        except RedisError as e:
            raise TransportError(f"Could not connect to Redis at {self.url}: {e}") from e

        self._listener = asyncio.create_task(self.listen())
        logger.info(f"✓ Connected to Redis at {self.url}")

    async def publish(self, room_id: str, event: str, data: dict):
        """Publish one event to a room channel."""
        payload = {"event": event, "data": {**data, "groupId": room_id}}
        try:
            await self.client.publish(room_channel(room_id), json.dumps(payload, default=str))
        except RedisError as e:
            raise TransportError(f"Publish '{event}' to room {room_id} failed: {e}") from e
        logger.debug(f"📤 Published '{event}' to Redis channel '{room_channel(room_id)}'")

    async def emit(self, event: str, payload: Any) -> None:
        if not self.connected:
            raise TransportError(f"Cannot emit '{event_name(event)}': Redis not connected")

        name = event_name(event)
        member = {"userId": self.user_id, "username": self.username}

        if name == RealtimeEvent.JOIN_GROUP.value:
            room_id = str(payload)
            self._joined.add(room_id)
            await self.publish(room_id, RealtimeEvent.USER_JOINED.value, member)

        elif name == RealtimeEvent.LEAVE_GROUP.value:
            room_id = str(payload)
            self._joined.discard(room_id)
            await self.publish(room_id, RealtimeEvent.USER_LEFT.value, member)

        elif name == RealtimeEvent.SEND_MESSAGE.value:
            room_id = event_room_id(payload)
            if room_id is None:
                raise TransportError("send_message payload names no room")
            await self.publish(room_id, RealtimeEvent.NEW_MESSAGE.value, payload.get("message") or {})

        else:
            raise TransportError(f"Unsupported event for Redis transport: {name}")

    async def handle_message(self, message: dict):
        """Route one pub/sub message to the registered handlers."""
        if message.get("type") not in ("message", "pmessage"):
            return

        try:
            envelope = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Redis message is not JSON - ignoring")
            return

        event = envelope.get("event") if isinstance(envelope, dict) else None
        data = envelope.get("data") if isinstance(envelope, dict) else None
        room_id = event_room_id(data)

        if not event or room_id is None:
            logger.warning("Redis message without event or room_id - ignoring")
            return
        if room_id not in self._joined:
            return

        logger.debug(f"➡ Redis: Routing '{event}' to room={room_id}")
        await self.dispatch(event, data)

    async def listen(self):
        """Read the pattern subscription until cancelled."""
        try:
            async for message in self.pubsub.listen():
                await self.handle_message(message)
        except asyncio.CancelledError:
            raise
        except RedisError as e:
            logger.error(f"Redis listener stopped: {e}")

    async def disconnect(self) -> None:
        """Stop listening and close connections."""
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        try:
            if self.pubsub:
                await self.pubsub.punsubscribe()
                await self.pubsub.aclose()
            if self.client:
                await self.client.aclose()
        except RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")
        finally:
            self.pubsub = None
            self.client = None
        self._joined.clear()
        self.clear_handlers()
        logger.info("Redis connection closed")
