"""Tests for the REST request layer."""

from __future__ import annotations

import httpx
import pytest

from chatsync.core.errors import ApiError
from chatsync.services.api_client import ApiClient

from conftest import FakeBackend, request_json


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def api(backend):
    return ApiClient(base_url="http://chat.test/api", transport=httpx.MockTransport(backend))


@pytest.mark.asyncio
async def test_login_parses_auth_response(api, backend):
    backend.routes[("POST", "/auth/login")] = {"token": "t0k", "user": {"id": 7, "username": "alice"}}

    response = await api.login("alice@example.com", "secret")

    assert response.token == "t0k"
    assert response.user.id == "7"
    assert request_json(backend.requests[0]) == {"email": "alice@example.com", "password": "secret"}


@pytest.mark.asyncio
async def test_no_token_means_no_authorization_header(api, backend):
    backend.routes[("GET", "/groups")] = []
    await api.list_groups()
    assert "Authorization" not in backend.requests[0].headers


@pytest.mark.asyncio
async def test_token_read_on_every_request(backend):
    token = {"value": None}
    api = ApiClient(
        base_url="http://chat.test/api",
        token_provider=lambda: token["value"],
        transport=httpx.MockTransport(backend),
    )
    backend.routes[("GET", "/groups")] = []

    await api.list_groups()
    token["value"] = "fresh"
    await api.list_groups()

    assert "Authorization" not in backend.requests[0].headers
    assert backend.requests[1].headers["Authorization"] == "Bearer fresh"


@pytest.mark.asyncio
async def test_error_body_becomes_api_error(api, backend):
    backend.routes[("GET", "/groups/3")] = (404, {"error": "Group not found"})

    with pytest.raises(ApiError) as exc:
        await api.get_group_details("3")

    assert exc.value.status == 404
    assert exc.value.message == "Group not found"
    assert exc.value.payload == {"error": "Group not found"}
    assert str(exc.value) == "HTTP 404: Group not found"


@pytest.mark.asyncio
async def test_error_without_body(api, backend):
    backend.routes[("GET", "/groups/3")] = lambda request: httpx.Response(502)

    with pytest.raises(ApiError) as exc:
        await api.get_group_details("3")

    assert exc.value.status == 502
    assert exc.value.message == "HTTP 502"


@pytest.mark.asyncio
async def test_send_message_carries_client_id(api, backend):
    backend.routes[("POST", "/messages/3/send")] = {"id": 10, "content": "hi"}

    response = await api.send_message("3", "hi", client_id="c-1")

    assert response["id"] == 10
    assert request_json(backend.requests[0]) == {"content": "hi", "clientId": "c-1"}


@pytest.mark.asyncio
async def test_messages_accept_both_payload_shapes(api, backend):
    backend.routes[("GET", "/messages/3")] = [
        {"id": 1, "user_id": 2, "username": "bob", "content": "rest row", "created_at": "2026-01-01T10:00:00Z"},
        {"id": 2, "userId": 2, "username": "bob", "content": "event shape"},
    ]

    messages = await api.get_messages("3", limit=20, offset=40)

    assert [m.author_id for m in messages] == ["2", "2"]
    assert messages[1].created_at is not None
    params = backend.requests[0].url.params
    assert (params["limit"], params["offset"]) == ("20", "40")


@pytest.mark.asyncio
async def test_members_and_readers(api, backend):
    backend.routes[("GET", "/groups/3/members")] = [{"id": 1, "username": "alice", "status": "online"}]
    backend.routes[("GET", "/messages/10/readers")] = [{"user_id": 2, "username": "bob", "read_at": "now"}]

    members = await api.get_group_members("3")
    readers = await api.get_readers("10")

    assert members[0].user_id == "1"
    assert readers[0].user_id == "2"


@pytest.mark.asyncio
async def test_search_and_push_token(api, backend):
    backend.routes[("GET", "/messages/3/search")] = [{"id": 4, "content": "needle"}]
    backend.routes[("POST", "/users/push-token")] = {"success": True}

    found = await api.search_messages("3", "needle")
    await api.save_push_token("ExponentPushToken[x]")

    assert found[0].content == "needle"
    assert backend.requests[0].url.params["q"] == "needle"
    assert request_json(backend.requests[1]) == {"pushToken": "ExponentPushToken[x]"}
