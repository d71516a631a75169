"""Shared test fixtures: an in-memory real-time connection and a routed fake REST backend."""
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from chatsync.core.errors import TransportError
from chatsync.core.state import Session
from chatsync.models.models import Message
from chatsync.services.api_client import ApiClient
from chatsync.services.connection_manager import ConnectionManager
from chatsync.services.history_loader import HistoryLoader
from chatsync.services.realtime import Connection, event_name
from chatsync.services.room_manager import RoomSubscriptionManager


class FakeConnection(Connection):
    """Real-time connection that records emits and lets tests push inbound events."""

    def __init__(self, fail_connect: bool = False, fail_emit: bool = False):
        super().__init__()
        self.fail_connect = fail_connect
        self.fail_emit = fail_emit
        self.emitted: List[Tuple[str, Any]] = []
        self._connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise TransportError("connection refused")
        self._connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False
        self.clear_handlers()

    async def emit(self, event, payload) -> None:
        if self.fail_emit:
            raise TransportError("emit failed")
        self.emitted.append((event_name(event), payload))

    def emitted_events(self, name: str) -> List[Any]:
        return [payload for event, payload in self.emitted if event == name]


class FakeBackend:
    """
    Routes httpx requests to canned responses keyed by (method, path).

    A route value is either a JSON-able body (served with 200), an
    (status, body) tuple, or a callable taking the request.
    """

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes: Dict[Tuple[str, str], Any] = dict(routes or {})
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")
        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={"error": f"No route {request.method} {path}"})
        if callable(route):
            return route(request)
        if isinstance(route, tuple):
            status, body = route
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=route)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path.removeprefix("/api") == path
        ]


def request_json(request: httpx.Request) -> dict:
    return json.loads(request.content.decode("utf-8"))


def make_message(message_id, content: str = "hi", user_id="2", username: str = "bob", **extra) -> Message:
    return Message.model_validate(
        {"id": message_id, "user_id": user_id, "username": username, "content": content, **extra}
    )


def message_event(message_id, content: str = "hi", room_id="3", user_id="2", **extra) -> dict:
    return {
        "id": message_id,
        "userId": user_id,
        "username": "bob",
        "content": content,
        "groupId": room_id,
        **extra,
    }


ROOM_ROUTES = {
    ("GET", "/groups/3"): {"id": 3, "name": "General", "description": "Chit chat"},
    ("GET", "/messages/3"): [
        {"id": 1, "user_id": 2, "username": "bob", "content": "m1", "created_at": "2026-01-01T10:00:00Z"},
        {"id": 2, "user_id": 1, "username": "alice", "content": "m2", "created_at": "2026-01-01T10:01:00Z"},
        {"id": 3, "user_id": 2, "username": "bob", "content": "m3", "created_at": "2026-01-01T10:02:00Z"},
    ],
    ("GET", "/groups/3/members"): [
        {"id": 1, "username": "alice", "status": "online"},
        {"id": 2, "username": "bob", "status": "offline"},
    ],
}


@pytest.fixture
def backend():
    return FakeBackend(ROOM_ROUTES)


@pytest.fixture
def api(backend):
    return ApiClient(
        base_url="http://chat.test/api",
        token_provider=lambda: "test-token",
        transport=httpx.MockTransport(backend),
    )


@pytest.fixture
def loader(api):
    return HistoryLoader(api, page_size=50)


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def session():
    return Session()


@pytest.fixture
def connections(session, connection):
    return ConnectionManager(session, lambda s: connection)


@pytest.fixture
def subscriptions(connections):
    return RoomSubscriptionManager(connections)
