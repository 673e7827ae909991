"""
HTTP/JSON transport for RiceDB.

Every operation is an independent request on an ``httpx.AsyncClient``.
There is no streaming primitive, so subscribe() and watch_memory() raise
UnsupportedOperationError as soon as they are called.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import httpx

from .bit_vector import BitVector
from .errors import NotConnectedError, RemoteError, TransportConnectionError
from .storage_backend import (
    AddMemoryResult,
    BatchInsertResult,
    DeleteRunResult,
    Document,
    GraphEvent,
    HealthInfo,
    InsertOptions,
    InsertResult,
    MemoryEntry,
    MemoryEvent,
    MemoryQuery,
    NodeIdLike,
    OperationResult,
    Permissions,
    SearchOptions,
    SearchResultItem,
    StorageTransport,
    SubscribeOptions,
    TransportKind,
    coerce_document,
    to_node_id,
)

logger = logging.getLogger(__name__)


def _entry_from_json(raw: Mapping[str, Any]) -> MemoryEntry:
    expires_at = raw.get("expires_at")
    return MemoryEntry(
        id=str(raw.get("id", "")),
        session_id=raw.get("session_id", ""),
        agent_id=raw.get("agent_id", ""),
        content=raw.get("content", ""),
        timestamp=int(raw.get("timestamp", 0)),
        metadata=dict(raw.get("metadata") or {}),
        expires_at=int(expires_at) if expires_at else None,
    )


class HttpTransport(StorageTransport):
    """
    RiceDB client over stateless HTTP requests.

    Args:
        host: Server host
        port: HTTP port
        token: Bearer token for the Authorization header
        timeout: Request timeout in seconds
        transport: Optional httpx transport (e.g. ``httpx.MockTransport``)
    """

    kind = TransportKind.HTTP
    unsupported_operations = frozenset({"subscribe", "watch_memory"})

    def __init__(
        self,
        host: str = "localhost",
        port: int = 3000,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(host, port)
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _new_client(self) -> httpx.AsyncClient:
        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            headers=headers,
            transport=self._transport,
        )

    # --- Connection ---------------------------------------------------------

    async def connect(self) -> bool:
        async with self._connect_lock:
            if self.connected:
                return True

            self._client = self._new_client()
            try:
                response = await self._client.get("/health")
            except httpx.HTTPError as e:
                await self._close_client()
                raise TransportConnectionError("http", self.address, str(e)) from e

            if response.status_code != 200:
                await self._close_client()
                raise TransportConnectionError(
                    "http", self.address, f"health check returned {response.status_code}"
                )

            self.connected = True
            logger.info("Connected to RiceDB over HTTP at %s", self.base_url)
            return True

    async def disconnect(self) -> None:
        await self._close_client()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        self.connected = False
        if client is not None:
            await client.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        payload: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        if self._client is None:
            raise NotConnectedError()
        try:
            response = await self._client.request(method, url, json=payload, params=params)
        except httpx.TransportError as e:
            raise TransportConnectionError("http", self.address, str(e)) from e

        if response.status_code >= 400:
            raise RemoteError(response.text, status=response.status_code)
        return response

    async def _request(
        self,
        method: str,
        url: str,
        payload: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send a request; an empty body decodes to None."""
        response = await self._send(method, url, payload, params)
        if not response.content:
            return None
        return response.json()

    async def _request_body(
        self,
        method: str,
        url: str,
        payload: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send a request whose answer must carry a JSON body."""
        response = await self._send(method, url, payload, params)
        if not response.content:
            raise RemoteError(f"Empty response from {method} {url}", status=response.status_code)
        return response.json()

    async def health(self) -> HealthInfo:
        data = await self._request_body("GET", "/health")
        return HealthInfo(status=data.get("status", ""), version=data.get("version", ""))

    # --- Users --------------------------------------------------------------

    async def login(self, username: str, password: str) -> str:
        data = await self._request_body(
            "POST", "/auth/login", {"username": username, "password": password}
        )
        self._token = data["token"]
        if self._client is not None:
            self._client.headers["Authorization"] = f"Bearer {self._token}"
        return self._token

    async def create_user(self, username: str, password: str, role: str = "user") -> int:
        data = await self._request_body(
            "POST",
            "/auth/create_user",
            {"username": username, "password": password, "role": role},
        )
        return int(data["user_id"])

    async def delete_user(self, username: str) -> bool:
        await self._request("DELETE", "/auth/delete_user", {"username": username})
        return True

    async def get_user(self, username: str) -> dict[str, Any]:
        return await self._request("GET", f"/auth/users/{username}")

    async def list_users(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/auth/users") or []

    # --- Nodes --------------------------------------------------------------

    async def insert(
        self,
        node_id: NodeIdLike,
        text: str,
        metadata: Any,
        options: InsertOptions | None = None,
    ) -> InsertResult:
        opts = options or InsertOptions()
        payload: dict[str, Any] = {
            "id": to_node_id(node_id),
            "text": text,
            "metadata": metadata,
            "user_id": to_node_id(opts.user_id),
        }
        if opts.session_id:
            payload["session_id"] = opts.session_id
        if opts.embedding:
            payload["embedding"] = opts.embedding
        if opts.run_id:
            payload["run_id"] = opts.run_id

        data = await self._request_body("POST", "/insert", payload)
        if not data.get("success"):
            raise RemoteError(data.get("message") or "Insert failed")
        return InsertResult(
            success=True,
            node_id=int(data["node_id"]),
            message=data.get("message", ""),
        )

    async def search(
        self,
        query: str,
        user_id: NodeIdLike,
        options: SearchOptions | None = None,
    ) -> list[SearchResultItem]:
        opts = options or SearchOptions()
        payload: dict[str, Any] = {
            "query": query,
            "user_id": to_node_id(user_id),
            "k": opts.k,
        }
        if opts.session_id:
            payload["session_id"] = opts.session_id
        if opts.filter:
            payload["filter"] = opts.filter
        if opts.query_embedding:
            payload["query_embedding"] = opts.query_embedding
        if opts.run_id:
            payload["run_id"] = opts.run_id

        data = await self._request("POST", "/search", payload)
        results = data if isinstance(data, list) else (data or {}).get("results", [])
        return [
            SearchResultItem(
                id=int(r["id"]), similarity=float(r["similarity"]), metadata=r.get("metadata")
            )
            for r in results
        ]

    async def delete(self, node_id: NodeIdLike, session_id: str | None = None) -> bool:
        params = {"session_id": session_id} if session_id else None
        await self._request("DELETE", f"/node/{to_node_id(node_id)}", params=params)
        return True

    async def delete_run(self, run_id: str) -> DeleteRunResult:
        data = await self._request("POST", "/run/delete", {"run_id": run_id}) or {}
        return DeleteRunResult(
            success=bool(data.get("success", True)),
            message=data.get("message", ""),
            count=int(data.get("count", 0)),
        )

    # --- Sessions -----------------------------------------------------------

    async def create_session(self, parent_session_id: str | None = None) -> str:
        payload = {"parent_session_id": parent_session_id} if parent_session_id else {}
        data = await self._request_body("POST", "/session/create", payload)
        return data["session_id"]

    async def snapshot_session(self, session_id: str, path: str) -> bool:
        await self._request("POST", f"/session/{session_id}/snapshot", {"path": path})
        return True

    async def load_session(self, path: str) -> str:
        data = await self._request_body("POST", "/session/load", {"path": path})
        return data["session_id"]

    async def commit_session(self, session_id: str, merge_strategy: str = "overwrite") -> bool:
        await self._request(
            "POST", f"/session/{session_id}/commit", {"merge_strategy": merge_strategy}
        )
        return True

    async def drop_session(self, session_id: str) -> bool:
        await self._request("DELETE", f"/session/{session_id}/drop")
        return True

    # --- Sparse distributed memory -------------------------------------------

    async def write_memory(
        self, address: BitVector, data: BitVector, user_id: NodeIdLike = 1
    ) -> OperationResult:
        result = await self._request_body(
            "POST",
            "/sdm/write",
            {
                "address": address.to_list(),
                "data": data.to_list(),
                "user_id": to_node_id(user_id),
            },
        )
        return OperationResult(success=bool(result.get("success")), message=result.get("message", ""))

    async def read_memory(self, address: BitVector, user_id: NodeIdLike = 1) -> BitVector:
        result = await self._request_body(
            "POST",
            "/sdm/read",
            {"address": address.to_list(), "user_id": to_node_id(user_id)},
        )
        return BitVector(int(chunk) for chunk in result["data"])

    # --- Agent memory -------------------------------------------------------

    async def add_memory(
        self,
        session_id: str,
        agent_id: str,
        content: str,
        metadata: dict[str, str] | None = None,
        ttl_seconds: int | None = None,
    ) -> AddMemoryResult:
        payload: dict[str, Any] = {
            "agent_id": agent_id,
            "content": content,
            "metadata": metadata or {},
        }
        if ttl_seconds is not None:
            payload["ttl_seconds"] = ttl_seconds

        data = await self._request_body("POST", f"/memory/{session_id}", payload)
        entry = _entry_from_json(data["entry"]) if data.get("entry") else None
        return AddMemoryResult(
            success=bool(data.get("success")), message=data.get("message", ""), entry=entry
        )

    async def get_memory(
        self, session_id: str, query: MemoryQuery | None = None
    ) -> list[MemoryEntry]:
        q = query or MemoryQuery()
        params: dict[str, Any] = {"limit": q.limit}
        if q.after:
            params["after_timestamp"] = q.after
        if q.filter:
            params["filter"] = json.dumps(q.filter)

        data = await self._request("GET", f"/memory/{session_id}", params=params) or {}
        return [_entry_from_json(e) for e in data.get("entries", [])]

    async def clear_memory(self, session_id: str) -> OperationResult:
        data = await self._request("DELETE", f"/memory/{session_id}") or {}
        return OperationResult(success=bool(data.get("success")), message=data.get("message", ""))

    def watch_memory(self, session_id: str) -> AsyncIterator[MemoryEvent]:
        raise self._unsupported("watch_memory", "Use gRPC.")

    # --- Graph --------------------------------------------------------------

    async def add_edge(
        self,
        from_node: NodeIdLike,
        to_node: NodeIdLike,
        relation: str,
        weight: float = 1.0,
    ) -> bool:
        await self._request(
            "POST",
            "/graph/edge",
            {
                "from": to_node_id(from_node),
                "to": to_node_id(to_node),
                "relation": relation,
                "weight": weight,
            },
        )
        return True

    async def get_neighbors(
        self, node_id: NodeIdLike, relation: str | None = None
    ) -> list[int]:
        payload: dict[str, Any] = {"node_id": to_node_id(node_id)}
        if relation:
            payload["relation"] = relation
        data = await self._request("POST", "/graph/neighbors", payload) or {}
        return [int(n) for n in data.get("neighbors", [])]

    async def traverse(self, start_node: NodeIdLike, max_depth: int = 1) -> list[int]:
        data = await self._request(
            "POST",
            "/graph/traverse",
            {"start": to_node_id(start_node), "max_depth": max_depth},
        ) or {}
        return [int(n) for n in data.get("visited", [])]

    async def sample_graph(self, limit: int = 100) -> dict[str, Any]:
        return await self._request("POST", "/graph/sample", {"limit": limit})

    # --- Streaming ----------------------------------------------------------

    def subscribe(self, options: SubscribeOptions | None = None) -> AsyncIterator[GraphEvent]:
        raise self._unsupported("subscribe", "Use gRPC.")

    async def batch_insert(
        self,
        documents: Sequence[Document | Mapping[str, Any]],
        user_id: NodeIdLike = 1,
    ) -> BatchInsertResult:
        default_user = to_node_id(user_id)
        payload = []
        for raw in documents:
            doc = coerce_document(raw)
            payload.append(
                {
                    "id": to_node_id(doc.id),
                    "text": doc.text,
                    "metadata": doc.metadata,
                    "user_id": to_node_id(doc.user_id) if doc.user_id is not None else default_user,
                }
            )

        data = await self._request_body("POST", "/batch_insert", payload)
        logger.debug("HTTP batch insert acknowledged %s of %d", data.get("count"), len(payload))
        return BatchInsertResult(
            count=int(data["count"]),
            node_ids=[int(n) for n in data.get("node_ids", [])],
        )

    # --- ACL ----------------------------------------------------------------

    async def grant_permission(
        self,
        node_id: NodeIdLike,
        user_id: NodeIdLike,
        permissions: Permissions | Mapping[str, bool],
    ) -> bool:
        await self._request(
            "POST",
            "/acl/grant",
            {
                "node_id": to_node_id(node_id),
                "target_user_id": to_node_id(user_id),
                "permissions": Permissions.coerce(permissions).to_dict(),
            },
        )
        return True

    async def revoke_permission(self, node_id: NodeIdLike, user_id: NodeIdLike) -> bool:
        await self._request(
            "POST",
            "/acl/revoke",
            {"node_id": to_node_id(node_id), "target_user_id": to_node_id(user_id)},
        )
        return True

    async def check_permission(
        self, node_id: NodeIdLike, user_id: NodeIdLike, permission_type: str
    ) -> bool:
        data = await self._request(
            "POST",
            "/acl/check",
            {
                "node_id": to_node_id(node_id),
                "user_id": to_node_id(user_id),
                "permission_type": permission_type,
            },
        ) or {}
        return bool(data.get("allowed", False))


__all__ = ["HttpTransport"]
