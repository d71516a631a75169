# chatsync/services/connection_manager.py

from __future__ import annotations

import logging
from typing import Callable, Optional

from chatsync.core.errors import TransportError
from chatsync.core.state import Session
from chatsync.services.realtime import Connection

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[Session], Connection]

# ============================================================================
# CONNECTION LIFECYCLE MANAGER
# ============================================================================

class ConnectionManager:
    """
    Owns the single process-wide real-time connection.

    The connection exists exactly while the user is authenticated. It is
    opened on the login transition and closed on the logout transition,
    never in between, and never by room-level code.

    Lifecycle:
        on_authenticated(user_id)  -> connect (no-op if a connection exists)
        on_unauthenticated()       -> disconnect (no-op if none exists)

    Room subscriptions live on the connection. Dropping it drops them all;
    the backend treats a closed connection as leaving every room.

    Failures:
        A connect failure raises TransportError and leaves no connection
        behind. Retrying is the caller's call (or the transport's own
        reconnect loop once connected).
    """

    def __init__(self, session: Session, connection_factory: ConnectionFactory) -> None:
        self.session = session
        self._factory = connection_factory

    @property
    def connection(self) -> Optional[Connection]:
        return self.session.connection

    async def on_authenticated(self, user_id: str, username: Optional[str] = None) -> Connection:
        """
        Establish the connection for a newly authenticated user.

        Args:
            user_id: Authenticated user's id
            username: Display name, used by transports that announce presence

        Returns:
            The live connection (the existing one if already connected)

        Raises:
            TransportError: the transport could not connect
        """
        if self.session.connection is not None:
            if self.session.user_id == user_id:
                logger.debug(f"Connection already established for user {user_id}")
                return self.session.connection
            # A different account signed in without signing out first
            await self.on_unauthenticated()

        self.session.sign_in(user_id, username)

        connection = self._factory(self.session)
        # Claim the slot before awaiting so a concurrent call sees it
        self.session.connection = connection

        try:
            await connection.connect()
        except TransportError:
            if self.session.connection is connection:
                self.session.connection = None
            logger.error(f"✗ Real-time connection failed for user {user_id}")
            raise

        logger.info(f"✓ Real-time connection established for user {user_id}")
        return connection

    async def on_unauthenticated(self) -> None:
        """Tear down the connection, if any, and clear the session."""
        connection = self.session.connection
        user_id = self.session.user_id
        self.session.connection = None
        self.session.sign_out()

        if connection is None:
            return

        try:
            await connection.disconnect()
        except TransportError as e:
            logger.warning(f"Error while closing real-time connection: {e}")

        logger.info(f"✗ Real-time connection closed for user {user_id}")
