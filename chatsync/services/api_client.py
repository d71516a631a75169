# chatsync/services/api_client.py

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from chatsync.core.config import settings
from chatsync.core.errors import ApiError
from chatsync.models.models import AuthResponse, Message, Reader, Room, RoomMember, User

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]

# ============================================================================
# REST REQUEST LAYER
# ============================================================================

class ApiClient:
    """
    Async client for the chat backend's REST API.

    Every call either resolves with a typed payload or raises ApiError
    carrying the HTTP status and the server's error message. The bearer
    token is read from ``token_provider`` on every request, so a login or
    logout takes effect without rebuilding the client.

    Endpoints:
        /auth/register, /auth/login
        /groups, /groups/all, /groups/{id}, /groups/{id}/join, /groups/{id}/members
        /messages/{group_id}, /messages/{group_id}/send, /messages/{group_id}/search
        /messages/{message_id} (DELETE), /messages/{message_id}/read, /messages/{message_id}/readers
        /users/profile, /users/presence, /users/groups/{id}/presence, /users/push-token

    Usage:
        api = ApiClient(base_url="http://localhost:5000/api", token_provider=store.get)
        messages = await api.get_messages("3", limit=50)
        await api.aclose()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self._token_provider = token_provider or (lambda: None)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.REQUEST_TIMEOUT,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """
        Send one request and decode its JSON body.

        Raises:
            ApiError: non-2xx response (status set) or transport failure (status None)
        """
        headers: Dict[str, str] = {}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug(f"[{method}] {self.base_url}{endpoint}")

        try:
            response = await self._client.request(
                method, endpoint, json=json, params=params, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"API Error [{method} {endpoint}]: {e}")
            raise ApiError(f"Request failed: {e}") from e

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if response.is_error:
            message = (
                data.get("error") or data.get("message") if isinstance(data, dict) else None
            ) or f"HTTP {response.status_code}"
            logger.error(f"API Error [{method} {endpoint}]: {response.status_code} {message}")
            raise ApiError(
                message,
                status=response.status_code,
                payload=data if isinstance(data, dict) else None,
            )

        return data

    # ------------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------------

    async def register(self, username: str, email: str, password: str) -> AuthResponse:
        data = await self._request(
            "POST", "/auth/register", json={"username": username, "email": email, "password": password}
        )
        return AuthResponse.model_validate(data)

    async def login(self, email: str, password: str) -> AuthResponse:
        data = await self._request("POST", "/auth/login", json={"email": email, "password": password})
        return AuthResponse.model_validate(data)

    # ------------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------------

    async def create_group(self, name: str, description: str = "") -> Room:
        data = await self._request("POST", "/groups", json={"name": name, "description": description})
        return Room.model_validate(data)

    async def list_groups(self) -> List[Room]:
        data = await self._request("GET", "/groups")
        return [Room.model_validate(r) for r in data]

    async def get_all_groups(self) -> List[Room]:
        data = await self._request("GET", "/groups/all")
        return [Room.model_validate(r) for r in data]

    async def join_group(self, group_id: str) -> dict:
        return await self._request("POST", f"/groups/{group_id}/join")

    async def get_group_details(self, group_id: str) -> Room:
        data = await self._request("GET", f"/groups/{group_id}")
        return Room.model_validate(data)

    async def get_group_members(self, group_id: str) -> List[RoomMember]:
        data = await self._request("GET", f"/groups/{group_id}/members")
        return [RoomMember.model_validate(m) for m in data]

    # ------------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------------

    async def send_message(self, group_id: str, content: str, client_id: Optional[str] = None) -> dict:
        """
        Submit a message. Returns the raw response body, which carries the
        server-assigned ``id`` (and usually the stored row).
        """
        body: Dict[str, Any] = {"content": content}
        if client_id:
            body["clientId"] = client_id
        return await self._request("POST", f"/messages/{group_id}/send", json=body)

    async def get_messages(self, group_id: str, limit: int = 50, offset: int = 0) -> List[Message]:
        data = await self._request(
            "GET", f"/messages/{group_id}", params={"limit": limit, "offset": offset}
        )
        return [Message.model_validate(m) for m in data]

    async def delete_message(self, message_id: str) -> dict:
        return await self._request("DELETE", f"/messages/{message_id}")

    async def mark_as_read(self, message_id: str) -> dict:
        return await self._request("POST", f"/messages/{message_id}/read")

    async def get_readers(self, message_id: str) -> List[Reader]:
        data = await self._request("GET", f"/messages/{message_id}/readers")
        return [Reader.model_validate(r) for r in data]

    async def search_messages(self, group_id: str, q: str) -> List[Message]:
        data = await self._request("GET", f"/messages/{group_id}/search", params={"q": q})
        return [Message.model_validate(m) for m in data]

    # ------------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------------

    async def get_profile(self) -> User:
        data = await self._request("GET", "/users/profile")
        return User.model_validate(data)

    async def update_profile(self, data: Dict[str, Any]) -> User:
        result = await self._request("PUT", "/users/profile", json=data)
        return User.model_validate(result)

    async def get_presence(self) -> List[RoomMember]:
        data = await self._request("GET", "/users/presence")
        return [RoomMember.model_validate(p) for p in data]

    async def get_group_presence(self, group_id: str) -> List[RoomMember]:
        data = await self._request("GET", f"/users/groups/{group_id}/presence")
        return [RoomMember.model_validate(p) for p in data]

    async def save_push_token(self, push_token: str) -> dict:
        return await self._request("POST", "/users/push-token", json={"pushToken": push_token})
