# chatsync/client.py

from __future__ import annotations

import logging
from typing import Optional

from chatsync.core.config import Settings, settings as default_settings
from chatsync.core.state import Session
from chatsync.services.api_client import ApiClient
from chatsync.services.auth_service import AuthService, CredentialStore
from chatsync.services.chat_room import ChatRoom
from chatsync.services.connection_manager import ConnectionFactory, ConnectionManager
from chatsync.services.history_loader import HistoryLoader
from chatsync.services.realtime import Connection, SocketIOConnection
from chatsync.services.redis_pub_sub import RedisConnection
from chatsync.services.room_manager import RoomSubscriptionManager

logger = logging.getLogger(__name__)


def connection_factory(settings: Settings, credentials: CredentialStore) -> ConnectionFactory:
    """Build connections for the configured real-time transport."""

    def build(session: Session) -> Connection:
        if settings.REALTIME_TRANSPORT == "redis":
            return RedisConnection(
                url=settings.REDIS_URL, user_id=session.user_id, username=session.username
            )
        return SocketIOConnection(
            url=settings.SOCKET_URL,
            token=credentials.get(),
            socketio_path=settings.SOCKETIO_PATH,
            connect_timeout=settings.CONNECT_TIMEOUT,
        )

    return build


class ChatClient:
    """
    Wires the client together: one session, one request layer, one
    connection manager, and a ChatRoom per open room view.

    Usage:
        client = ChatClient()
        await client.auth.login("alice@example.com", "secret")
        room = client.room("3")
        await room.open()
        ...
        await room.close()
        await client.aclose()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        api: Optional[ApiClient] = None,
        credentials: Optional[CredentialStore] = None,
        factory: Optional[ConnectionFactory] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.credentials = credentials or CredentialStore(self.settings.CREDENTIALS_FILE)
        self.api = api or ApiClient(
            base_url=self.settings.API_BASE_URL,
            token_provider=self.credentials.get,
            timeout=self.settings.REQUEST_TIMEOUT,
        )
        self.session = Session()
        self.connections = ConnectionManager(
            self.session, factory or connection_factory(self.settings, self.credentials)
        )
        self.subscriptions = RoomSubscriptionManager(self.connections)
        self.auth = AuthService(self.api, self.credentials, self.connections)
        self.loader = HistoryLoader(self.api, page_size=self.settings.MESSAGE_PAGE_SIZE)

    def room(self, room_id: str, on_messages=None, on_members=None) -> ChatRoom:
        """Create the controller for one room view (not yet opened)."""
        return ChatRoom(
            room_id,
            session=self.session,
            api=self.api,
            loader=self.loader,
            subscriptions=self.subscriptions,
            member_refresh_debounce=self.settings.MEMBER_REFRESH_DEBOUNCE,
            on_messages=on_messages,
            on_members=on_members,
        )

    async def aclose(self) -> None:
        """Close the real-time connection (keeping the stored token) and the HTTP client."""
        await self.connections.on_unauthenticated()
        await self.api.aclose()
