"""
Authentication transitions for the chat client.

Features:
- Bearer token kept in a CredentialStore (memory, optionally a JSON file)
- Login / register / logout / restore-on-startup
- User id taken from the auth response, or from the token's claims
- Every transition drives the ConnectionManager exactly once
"""

import json
import logging
import os
import time
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from chatsync.core.config import settings
from chatsync.core.errors import ApiError
from chatsync.core.state import Session
from chatsync.models.models import AuthResponse, User
from chatsync.services.api_client import ApiClient
from chatsync.services.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


# ============================================================================
# CREDENTIAL STORE
# ============================================================================

class CredentialStore:
    """
    Holds the bearer token the request layer attaches to every call.

    With a ``path`` the token survives restarts (JSON file, like
    {"token": "..."}); without one it lives in memory only.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path if path is not None else settings.CREDENTIALS_FILE
        self._token: Optional[str] = None
        self.load()

    def get(self) -> Optional[str]:
        return self._token

    def load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            self._token = data.get("token") if isinstance(data, dict) else None
        except (OSError, ValueError) as e:
            logger.error(f"Could not read credentials from {self.path}: {e}")
            self._token = None

    def save(self, token: str):
        self._token = token
        if not self.path:
            return
        try:
            with open(self.path, "w") as f:
                json.dump({"token": token}, f)
        except OSError as e:
            logger.error(f"Could not write credentials to {self.path}: {e}")

    def clear(self):
        self._token = None
        if self.path and os.path.exists(self.path):
            try:
                os.remove(self.path)
            except OSError as e:
                logger.error(f"Could not remove credentials file {self.path}: {e}")


# ============================================================================
# TOKEN CLAIMS
# ============================================================================

def token_claims(token: str) -> Dict[str, Any]:
    """Read a JWT's claims without verifying it (verification is the server's job)."""
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return {}


def token_expired(token: str, leeway: int = 30) -> bool:
    exp = token_claims(token).get("exp")
    if exp is None:
        return False
    return time.time() > float(exp) - leeway


def user_from_token(token: str) -> Optional[User]:
    claims = token_claims(token)
    user_id = claims.get("id") or claims.get("userId") or claims.get("sub")
    if user_id is None:
        return None
    return User(id=user_id, username=claims.get("username", ""), email=claims.get("email"))


# ============================================================================
# AUTH SERVICE
# ============================================================================

class AuthService:
    """
    Moves the session between signed-out and signed-in.

    A successful login, register or restore stores the token, marks the
    session authenticated and opens the real-time connection. Logout clears
    all three. Calling login again while signed in re-authenticates over REST
    but does not open a second connection.
    """

    def __init__(
        self,
        api: ApiClient,
        credentials: CredentialStore,
        connections: ConnectionManager,
    ):
        self.api = api
        self.credentials = credentials
        self.connections = connections

    @property
    def session(self) -> Session:
        return self.connections.session

    async def login(self, email: str, password: str) -> User:
        """
        Log in and open the real-time connection.

        Raises:
            ApiError: bad credentials or server unreachable
            TransportError: logged in, but the real-time connection failed
        """
        response = await self.api.login(email, password)
        logger.info(f"User logged in: {email}")
        return await self._sign_in(response)

    async def register(self, username: str, email: str, password: str) -> User:
        response = await self.api.register(username, email, password)
        logger.info(f"User registered: {username}")
        return await self._sign_in(response)

    async def restore(self) -> Optional[User]:
        """
        Resume a session from a stored token, if it is still valid.

        Returns:
            The signed-in user, or None when there is no usable token.
        """
        token = self.credentials.get()
        if not token:
            return None

        if token_expired(token):
            logger.info("Stored token expired - signing out")
            self.credentials.clear()
            return None

        try:
            user = await self.api.get_profile()
        except ApiError as e:
            if e.status in (401, 403):
                logger.info("Stored token rejected - signing out")
                self.credentials.clear()
                return None
            raise

        await self.connections.on_authenticated(user.id, user.username)
        return user

    async def logout(self):
        self.credentials.clear()
        await self.connections.on_unauthenticated()
        logger.info("User logged out")

    async def _sign_in(self, response: AuthResponse) -> User:
        self.credentials.save(response.token)

        user = response.user or user_from_token(response.token)
        if user is None:
            self.credentials.clear()
            raise ApiError("Auth response carries no user id")

        await self.connections.on_authenticated(user.id, user.username)
        return user
