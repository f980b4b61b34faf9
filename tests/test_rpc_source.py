import json

import httpx
import pytest
import pytest_asyncio

from feedsync.core.config import Settings
from feedsync.core.exceptions import Conflict, NotAuthenticated, RemoteUnavailable
from feedsync.services.rpc_source import HttpRpcSource


class Backend:
    """Records requests and answers from a route table."""

    def __init__(self):
        self.requests = []
        self.responses = {}

    def reply(self, method, path, status=200, body=None):
        self.responses[(method, path)] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.get((request.method, request.url.path), (200, []))
        if isinstance(body, Exception):
            raise body
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def last_json(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def rpc_settings(tmp_path):
    return Settings(
        _env_file=None,
        cache_backend="memory",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'feedsync.db'}",
        remote_url="https://backend.example.com/",
        remote_api_key="anon-key",
    )


@pytest_asyncio.fixture
async def source(rpc_settings, backend):
    source = HttpRpcSource(
        rpc_settings, viewer_id="user-1", access_token="user-token",
        transport=httpx.MockTransport(backend.handler),
    )
    yield source
    await source.close()


def test_requires_remote_url(settings):
    with pytest.raises(ValueError):
        HttpRpcSource(settings)


def test_unknown_kind_has_no_route(source):
    with pytest.raises(ValueError):
        source.route("videos")


@pytest.mark.asyncio
async def test_fetch_page_calls_feed_procedure_with_paging(source, backend):
    backend.reply("POST", "/rest/v1/rpc/get_home_feed", body=[{"id": "1"}, {"id": "2"}])

    rows = await source.fetch_page("posts", limit=10, offset=20)

    assert rows == [{"id": "1"}, {"id": "2"}]
    request = backend.requests[-1]
    assert request.url.path == "/rest/v1/rpc/get_home_feed"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer user-token"
    assert backend.last_json() == {
        "p_current_user_id": "user-1",
        "p_limit_count": 10,
        "p_offset_count": 20,
    }


@pytest.mark.asyncio
async def test_fetch_page_passes_feed_params(source, backend):
    backend.reply("POST", "/rest/v1/rpc/get_member_directory", body=[])

    await source.fetch_page("members", limit=20, offset=0, params={"search": "bakery"})

    assert backend.last_json() == {
        "p_search": "bakery",
        "p_business_type": None,
        "p_market_area": None,
        "p_limit": 20,
        "p_offset": 0,
    }


@pytest.mark.asyncio
async def test_unpaged_procedure_is_sliced_locally(source, backend):
    conversations = [{"conversation_id": str(i)} for i in range(25)]
    backend.reply("POST", "/rest/v1/rpc/get_user_conversations", body=conversations)

    rows = await source.fetch_page("conversations", limit=10, offset=20,
                                   params={"context": "marketplace"})

    assert [row["conversation_id"] for row in rows] == ["20", "21", "22", "23", "24"]
    assert backend.last_json() == {"p_user_id": "user-1", "p_context": "marketplace"}


@pytest.mark.asyncio
async def test_fetch_one_reads_table_by_id(source, backend):
    backend.reply("GET", "/rest/v1/posts", body=[{"id": "42", "likes_count": 3}])

    row = await source.fetch_one("posts", "42")

    assert row == {"id": "42", "likes_count": 3}
    params = backend.requests[-1].url.params
    assert params["id"] == "eq.42"
    assert params["select"] == "*"


@pytest.mark.asyncio
async def test_fetch_one_uses_custom_id_field(source, backend):
    backend.reply("GET", "/rest/v1/conversations", body=[])

    assert await source.fetch_one("conversations", "c1") is None
    assert backend.requests[-1].url.params["conversation_id"] == "eq.c1"


@pytest.mark.asyncio
async def test_fetch_one_prefers_dedicated_procedure(source, backend):
    backend.reply("POST", "/rest/v1/rpc/get_listing_by_id", body={"id": "l1"})

    assert await source.fetch_one("listings", "l1") == {"id": "l1"}
    assert backend.last_json() == {"p_listing_id": "l1"}


@pytest.mark.asyncio
async def test_fetch_one_not_found_is_none(source, backend):
    backend.reply("GET", "/rest/v1/posts", status=404, body={"message": "gone"})

    assert await source.fetch_one("posts", "42") is None


@pytest.mark.asyncio
async def test_mutate_maps_action_to_procedure(source, backend):
    backend.reply("POST", "/rest/v1/rpc/add_comment",
                  body=[{"comments_count": 4}])

    result = await source.mutate("posts", "42", "comment", "user-1",
                                 payload={"content": "nice", "ignored": True})

    assert result == {"comments_count": 4}
    assert backend.last_json() == {
        "p_post_id": "42",
        "p_author_id": "user-1",
        "p_comment_content": "nice",
    }


@pytest.mark.asyncio
async def test_mutate_empty_response_is_empty_record(source, backend):
    backend.reply("POST", "/rest/v1/rpc/mark_messages_as_read", body=None)

    assert await source.mutate("conversations", "c1", "mark_read", "user-1") == {}


@pytest.mark.asyncio
async def test_mutate_unknown_action(source):
    with pytest.raises(ValueError):
        await source.mutate("members", "m1", "like", "user-1")


@pytest.mark.asyncio
async def test_mutate_conflict(source, backend):
    backend.reply("POST", "/rest/v1/rpc/toggle_post_like", status=409, body={"message": "dup"})

    with pytest.raises(Conflict):
        await source.mutate("posts", "42", "like", "user-1")


@pytest.mark.asyncio
async def test_server_error_is_remote_unavailable(source, backend):
    backend.reply("POST", "/rest/v1/rpc/get_home_feed", status=503, body={"message": "down"})

    with pytest.raises(RemoteUnavailable):
        await source.fetch_page("posts", limit=10, offset=0)


@pytest.mark.asyncio
async def test_transport_error_is_remote_unavailable(source, backend):
    backend.reply("POST", "/rest/v1/rpc/get_home_feed",
                  body=httpx.ConnectError("connection refused"))

    with pytest.raises(RemoteUnavailable):
        await source.fetch_page("posts", limit=10, offset=0)


@pytest.mark.asyncio
async def test_unauthorized_is_not_authenticated(source, backend):
    backend.reply("POST", "/rest/v1/rpc/get_home_feed", status=401, body={"message": "jwt expired"})

    with pytest.raises(NotAuthenticated):
        await source.fetch_page("posts", limit=10, offset=0)


@pytest.mark.asyncio
async def test_set_access_token_replaces_bearer(source, backend):
    source.set_access_token("refreshed")
    backend.reply("POST", "/rest/v1/rpc/get_home_feed", body=[])

    await source.fetch_page("posts", limit=10, offset=0)

    assert backend.requests[-1].headers["Authorization"] == "Bearer refreshed"


@pytest.mark.asyncio
async def test_user_status_lookup(source, backend):
    backend.reply("GET", "/rest/v1/profiles", body=[{"user_status": "verified"}])

    assert await source.get_user_status("author-1") == "verified"
    assert backend.requests[-1].url.params["id"] == "eq.author-1"


@pytest.mark.asyncio
async def test_user_status_missing_profile(source, backend):
    backend.reply("GET", "/rest/v1/profiles", body=[])

    assert await source.get_user_status("ghost") is None


@pytest.mark.asyncio
async def test_is_connected_checks_both_directions(source, backend):
    backend.reply("GET", "/rest/v1/connections", body=[{"id": "c1"}])

    assert await source.is_connected("user-1", "author-1") is True
    params = backend.requests[-1].url.params
    assert params["status"] == "eq.accepted"
    assert "user_id.eq.user-1,connected_user_id.eq.author-1" in params["or"]
    assert "user_id.eq.author-1,connected_user_id.eq.user-1" in params["or"]


@pytest.mark.asyncio
async def test_not_connected(source, backend):
    backend.reply("GET", "/rest/v1/connections", body=[])

    assert await source.is_connected("user-1", "author-1") is False
