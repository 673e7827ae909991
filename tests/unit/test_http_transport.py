"""
Tests for the HTTP transport, served by httpx.MockTransport.

Tests cover:
- Connect and health check, connection failures
- Request payloads and response decoding
- Bearer token handling
- Streaming operations rejected without network I/O
- batch_grant partial failure and insert_with_acl composition
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from rice_storage.bit_vector import BitVector
from rice_storage.errors import (
    NotConnectedError,
    RemoteError,
    TransportConnectionError,
    UnsupportedOperationError,
    ValidationError,
)
from rice_storage.http_transport import HttpTransport
from rice_storage.storage_backend import (
    Document,
    InsertOptions,
    MemoryQuery,
    PermissionGrant,
    Permissions,
    SearchOptions,
    UserPermission,
)

Route = dict[str, Any] | list[Any] | Callable[[httpx.Request], httpx.Response]


class FakeRiceServer:
    """Routes requests by (method, path) and records them."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Route] = {
            ("GET", "/health"): {"status": "ok", "version": "1.2.3"},
        }

    def route(self, method: str, path: str, response: Route) -> None:
        self.routes[(method, path)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "no route"})
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    def last_body(self) -> Any:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def server() -> FakeRiceServer:
    return FakeRiceServer()


def make_transport(server: FakeRiceServer, **kwargs: Any) -> HttpTransport:
    return HttpTransport(transport=httpx.MockTransport(server.handler), **kwargs)


async def connected(server: FakeRiceServer, **kwargs: Any) -> HttpTransport:
    transport = make_transport(server, **kwargs)
    await transport.connect()
    return transport


class TestConnection:
    """Tests for connect/disconnect/health."""

    @pytest.mark.asyncio
    async def test_connect_checks_health(self, server):
        transport = make_transport(server)
        assert await transport.connect() is True
        assert transport.connected
        assert server.requests[0].url.path == "/health"
        health = await transport.health()
        assert health.status == "ok"
        assert health.version == "1.2.3"
        await transport.disconnect()
        assert not transport.connected

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, server):
        transport = await connected(server)
        await transport.connect()
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_unhealthy_server_fails_connect(self, server):
        server.route("GET", "/health", lambda r: httpx.Response(503, text="down"))
        transport = make_transport(server)
        with pytest.raises(TransportConnectionError, match="503"):
            await transport.connect()
        assert not transport.connected

    @pytest.mark.asyncio
    async def test_unreachable_server_fails_connect(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = HttpTransport(transport=httpx.MockTransport(refuse))
        with pytest.raises(TransportConnectionError) as exc_info:
            await transport.connect()
        assert isinstance(exc_info.value, ConnectionError)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_operation_before_connect(self, server):
        transport = make_transport(server)
        with pytest.raises(NotConnectedError):
            await transport.health()
        assert server.requests == []


class TestNodes:
    """Tests for insert/search/delete/delete_run."""

    @pytest.mark.asyncio
    async def test_insert_payload(self, server):
        server.route("POST", "/insert", {"success": True, "node_id": 101, "message": "ok"})
        transport = await connected(server)

        result = await transport.insert(
            "101",
            "doc-a",
            {"source": "test"},
            InsertOptions(user_id=7, session_id="s1", embedding=[0.1, 0.2], run_id="run-a"),
        )

        assert result.success
        assert result.node_id == 101
        assert server.last_body() == {
            "id": 101,
            "text": "doc-a",
            "metadata": {"source": "test"},
            "user_id": 7,
            "session_id": "s1",
            "embedding": [0.1, 0.2],
            "run_id": "run-a",
        }

    @pytest.mark.asyncio
    async def test_insert_omits_absent_optionals(self, server):
        server.route("POST", "/insert", {"success": True, "node_id": 1, "message": "ok"})
        transport = await connected(server)
        await transport.insert(1, "t", {})
        body = server.last_body()
        assert body["user_id"] == 1
        assert "run_id" not in body
        assert "session_id" not in body

    @pytest.mark.asyncio
    async def test_insert_reported_failure_raises(self, server):
        server.route("POST", "/insert", {"success": False, "message": "duplicate"})
        transport = await connected(server)
        with pytest.raises(RemoteError, match="duplicate"):
            await transport.insert(1, "t", {})

    @pytest.mark.asyncio
    async def test_error_status_raises_remote_error(self, server):
        server.route("POST", "/insert", lambda r: httpx.Response(500, text="boom"))
        transport = await connected(server)
        with pytest.raises(RemoteError) as exc_info:
            await transport.insert(1, "t", {})
        assert exc_info.value.status == 500
        assert "boom" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_empty_insert_response_raises_remote_error(self, server):
        server.route("POST", "/insert", lambda r: httpx.Response(204))
        transport = await connected(server)
        with pytest.raises(RemoteError) as exc_info:
            await transport.insert(1, "t", {})
        assert exc_info.value.status == 204
        assert "Empty response" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_empty_read_memory_response_raises_remote_error(self, server):
        server.route("POST", "/sdm/read", lambda r: httpx.Response(200))
        transport = await connected(server)
        with pytest.raises(RemoteError) as exc_info:
            await transport.read_memory(BitVector())
        assert exc_info.value.status == 200

    @pytest.mark.asyncio
    async def test_invalid_node_id_never_sent(self, server):
        transport = await connected(server)
        with pytest.raises(ValidationError):
            await transport.insert(-5, "t", {})
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_search_decodes_results_object(self, server):
        server.route(
            "POST",
            "/search",
            {"results": [{"id": 3, "similarity": 0.91, "metadata": {"k": "v"}}]},
        )
        transport = await connected(server)

        hits = await transport.search(
            "query", 1, SearchOptions(k=5, filter={"type": "doc"}, run_id="run-b")
        )

        assert len(hits) == 1
        assert hits[0].id == 3
        assert hits[0].similarity == pytest.approx(0.91)
        assert hits[0].metadata == {"k": "v"}
        assert server.last_body() == {
            "query": "query",
            "user_id": 1,
            "k": 5,
            "filter": {"type": "doc"},
            "run_id": "run-b",
        }

    @pytest.mark.asyncio
    async def test_search_accepts_bare_list(self, server):
        server.route("POST", "/search", [{"id": "9", "similarity": 0.5, "metadata": None}])
        transport = await connected(server)
        hits = await transport.search("q", 1)
        assert hits[0].id == 9

    @pytest.mark.asyncio
    async def test_delete_passes_session(self, server):
        server.route("DELETE", "/node/42", {"success": True})
        transport = await connected(server)
        assert await transport.delete(42, session_id="s9") is True
        assert server.requests[-1].url.params["session_id"] == "s9"

    @pytest.mark.asyncio
    async def test_delete_run(self, server):
        server.route("POST", "/run/delete", {"success": True, "message": "deleted", "count": 4})
        transport = await connected(server)
        result = await transport.delete_run("run-x")
        assert result.count == 4
        assert result.success
        assert server.last_body() == {"run_id": "run-x"}


class TestAuth:
    """Tests for login and bearer tokens."""

    @pytest.mark.asyncio
    async def test_login_token_attached_to_later_requests(self, server):
        server.route("POST", "/auth/login", {"token": "tok-1", "user_id": 1, "role": "admin"})
        transport = await connected(server)

        assert await transport.login("admin", "secret") == "tok-1"
        await transport.health()

        assert server.requests[-1].headers["Authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_constructor_token(self, server):
        await connected(server, token="tok-0")
        assert server.requests[0].headers["Authorization"] == "Bearer tok-0"

    @pytest.mark.asyncio
    async def test_user_admin(self, server):
        server.route("POST", "/auth/create_user", {"user_id": 12})
        server.route("GET", "/auth/users", [{"username": "a"}])
        server.route("GET", "/auth/users/a", {"username": "a", "role": "user"})
        transport = await connected(server)
        assert await transport.create_user("a", "pw") == 12
        assert await transport.list_users() == [{"username": "a"}]
        assert (await transport.get_user("a"))["role"] == "user"


class TestStreamingUnsupported:
    """Streaming operations fail fast on HTTP."""

    @pytest.mark.asyncio
    async def test_subscribe_raises_without_network_call(self, server):
        transport = await connected(server)
        before = len(server.requests)
        with pytest.raises(UnsupportedOperationError) as exc_info:
            transport.subscribe()
        assert exc_info.value.operation == "subscribe"
        assert len(server.requests) == before

    def test_subscribe_raises_even_before_connect(self, server):
        transport = make_transport(server)
        with pytest.raises(UnsupportedOperationError):
            transport.subscribe()
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_watch_memory_raises_without_network_call(self, server):
        transport = await connected(server)
        before = len(server.requests)
        with pytest.raises(UnsupportedOperationError):
            transport.watch_memory("session-1")
        assert len(server.requests) == before


class TestMemory:
    """Tests for SDM and agent memory endpoints."""

    @pytest.mark.asyncio
    async def test_sdm_write_and_read(self, server):
        value = [(1 << 64) - 1] + [0] * 15
        server.route("POST", "/sdm/write", {"success": True, "message": "written"})
        server.route("POST", "/sdm/read", {"data": value})
        transport = await connected(server)

        address = BitVector([5] * 16)
        written = await transport.write_memory(address, BitVector(value))
        assert written.success
        assert server.last_body()["address"] == [5] * 16

        read = await transport.read_memory(address)
        assert read == BitVector(value)

    @pytest.mark.asyncio
    async def test_add_and_get_memory(self, server):
        entry = {
            "id": "m1",
            "session_id": "s1",
            "agent_id": "agent",
            "content": "note",
            "timestamp": 1700,
            "metadata": {"k": "v"},
        }
        server.route("POST", "/memory/s1", {"success": True, "message": "ok", "entry": entry})
        server.route("GET", "/memory/s1", {"entries": [entry | {"expires_at": 1800}]})
        transport = await connected(server)

        added = await transport.add_memory("s1", "agent", "note", {"k": "v"}, ttl_seconds=60)
        assert added.entry.id == "m1"
        assert added.entry.expires_at is None
        assert server.last_body()["ttl_seconds"] == 60

        entries = await transport.get_memory("s1", MemoryQuery(limit=5, after=100))
        assert entries[0].expires_at == 1800
        params = server.requests[-1].url.params
        assert params["limit"] == "5"
        assert params["after_timestamp"] == "100"


class TestGraph:
    """Tests for graph endpoints."""

    @pytest.mark.asyncio
    async def test_add_edge_and_link(self, server):
        server.route("POST", "/graph/edge", {"success": True})
        transport = await connected(server)

        assert await transport.link(1, "cites", 2, 0.5) is True
        assert server.last_body() == {"from": 1, "to": 2, "relation": "cites", "weight": 0.5}

    @pytest.mark.asyncio
    async def test_neighbors_and_traverse(self, server):
        server.route("POST", "/graph/neighbors", {"neighbors": [2, 3]})
        server.route("POST", "/graph/traverse", {"visited": [1, 2, 3]})
        transport = await connected(server)
        assert await transport.get_neighbors(1, "cites") == [2, 3]
        assert await transport.traverse(1, max_depth=2) == [1, 2, 3]
        assert server.last_body() == {"start": 1, "max_depth": 2}


class TestBatchOperations:
    """Tests for batch_insert, batch_grant and insert_with_acl."""

    @pytest.mark.asyncio
    async def test_batch_insert_payload(self, server):
        server.route("POST", "/batch_insert", {"count": 2, "node_ids": [1, 2]})
        transport = await connected(server)

        result = await transport.batch_insert(
            [Document(id=1, text="a"), {"id": 2, "metadata": {"x": 1}, "userId": 5}],
            user_id=3,
        )

        assert result.count == 2
        assert result.node_ids == [1, 2]
        assert server.last_body() == [
            {"id": 1, "text": "a", "metadata": {}, "user_id": 3},
            {"id": 2, "text": "", "metadata": {"x": 1}, "user_id": 5},
        ]

    @pytest.mark.asyncio
    async def test_batch_grant_captures_failures(self, server):
        def grant(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["target_user_id"] == 3:
                return httpx.Response(403, text="forbidden")
            return httpx.Response(200, json={"success": True})

        server.route("POST", "/acl/grant", grant)
        transport = await connected(server)

        result = await transport.batch_grant(
            [
                PermissionGrant(node_id=1, user_id=2, permissions=Permissions(read=True)),
                PermissionGrant(node_id=1, user_id=3, permissions=Permissions(write=True)),
                PermissionGrant(node_id=1, user_id=4),
            ]
        )

        assert result.total == 3
        assert result.successful == 2
        assert result.failed == 1
        assert [r.index for r in result.results] == [0, 2]
        assert result.errors[0].index == 1
        assert "forbidden" in result.errors[0].error

    @pytest.mark.asyncio
    async def test_insert_with_acl(self, server):
        server.route("POST", "/insert", {"success": True, "node_id": 50, "message": "ok"})
        server.route("POST", "/acl/grant", {"success": True})
        transport = await connected(server)

        users = [
            UserPermission(user_id=10, permissions=Permissions(read=True, write=True)),
            UserPermission(user_id=11, permissions=Permissions(read=True)),
        ]
        result = await transport.insert_with_acl(50, "shared", {}, users)

        insert_body = json.loads(server.requests[1].content)
        grant_body = json.loads(server.requests[2].content)
        assert insert_body["user_id"] == 10
        assert grant_body["target_user_id"] == 11
        assert grant_body["permissions"] == {"read": True, "write": False, "delete": False}
        assert result.acl_grants.successful == 1
        assert result.acl_users == users

    @pytest.mark.asyncio
    async def test_insert_with_acl_requires_users(self, server):
        transport = await connected(server)
        with pytest.raises(ValidationError):
            await transport.insert_with_acl(1, "t", {}, [])

    @pytest.mark.asyncio
    async def test_check_permission(self, server):
        server.route("POST", "/acl/check", {"allowed": True})
        transport = await connected(server)
        assert await transport.check_permission(1, 2, "read") is True
        assert server.last_body()["permission_type"] == "read"
