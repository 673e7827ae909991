"""
RiceDB client with transport selection and run-scope injection.

``RiceDBClient`` exposes the full StorageTransport operation set and
delegates each call to the transport chosen at connect time:

- TransportKind.GRPC / TransportKind.HTTP: that transport, failures propagate
- TransportKind.AUTO: gRPC first; if it cannot connect, log a warning and
  use HTTP instead

A default run scope given at construction (or via set_run_id) is applied to
insert, search and delete_run unless the call names its own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from .bit_vector import BitVector
from .errors import NotConnectedError, ValidationError
from .grpc_transport import GrpcTransport
from .http_transport import HttpTransport
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
)

if TYPE_CHECKING:
    from .config import StorageConfig

logger = logging.getLogger(__name__)


class RiceDBClient(StorageTransport):
    """
    Client for RiceDB over gRPC or HTTP.

    Args:
        host: Server host
        transport: grpc, http or auto (default)
        grpc_port: gRPC port
        http_port: HTTP port
        token: Bearer token handed to the transport
        run_id: Default run scope for insert, search and delete_run
        timeout: Per-call timeout in seconds

    Example:
        async with RiceDBClient("localhost", run_id="run-42") as db:
            await db.insert(1, "hello", {"source": "docs"})
            hits = await db.search("hello", user_id=1)
    """

    kind = TransportKind.AUTO

    def __init__(
        self,
        host: str = "localhost",
        transport: TransportKind | str = TransportKind.AUTO,
        grpc_port: int = 50051,
        http_port: int = 3000,
        token: str | None = None,
        run_id: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(host, 0)
        self.transport = TransportKind(transport)
        self.grpc_port = grpc_port
        self.http_port = http_port
        self.timeout = timeout
        self._token = token
        self._run_id = run_id
        self._client: StorageTransport | None = None
        self._connect_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: StorageConfig) -> RiceDBClient:
        """Build a client from a StorageConfig."""
        return cls(
            host=config.host,
            transport=config.transport,
            grpc_port=config.grpc_port,
            http_port=config.http_port,
            token=config.auth_token,
            run_id=config.run_id,
            timeout=config.timeout_seconds,
        )

    # --- Run scope ----------------------------------------------------------

    @property
    def run_id(self) -> str | None:
        """Default run scope."""
        return self._run_id

    def set_run_id(self, run_id: str | None) -> None:
        """Change the default run scope for later calls."""
        self._run_id = run_id

    def _resolve_run_id(self, run_id: str | None) -> str | None:
        return run_id or self._run_id or None

    # --- Connection ---------------------------------------------------------

    @property
    def transport_kind(self) -> TransportKind | None:
        """Kind of the connected transport, None before connect()."""
        return self._client.kind if self._client is not None else None

    def supports(self, operation: str) -> bool:
        return self._require_transport().supports(operation)

    async def connect(self) -> bool:
        """
        Connect using the configured transport.

        In auto mode a gRPC failure is logged and HTTP is tried; only an
        HTTP failure reaches the caller.
        """
        async with self._connect_lock:
            if self._client is not None:
                return True

            if self.transport is TransportKind.GRPC:
                client: StorageTransport = self._grpc_transport()
                await client.connect()
            elif self.transport is TransportKind.HTTP:
                client = self._http_transport()
                await client.connect()
            else:
                client = await self._connect_auto()

            self._client = client
            self.connected = True
            return True

    async def _connect_auto(self) -> StorageTransport:
        grpc_client = self._grpc_transport()
        try:
            await grpc_client.connect()
            return grpc_client
        except Exception as e:
            logger.warning(
                "gRPC connection to %s:%s failed, falling back to HTTP: %s",
                self.host,
                self.grpc_port,
                e,
            )

        http_client = self._http_transport()
        await http_client.connect()
        return http_client

    def _grpc_transport(self) -> StorageTransport:
        return GrpcTransport(self.host, self.grpc_port, self._token, self.timeout)

    def _http_transport(self) -> StorageTransport:
        return HttpTransport(self.host, self.http_port, self._token, self.timeout)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self.connected = False
        if client is not None:
            await client.disconnect()

    def _require_transport(self) -> StorageTransport:
        if self._client is None:
            raise NotConnectedError()
        return self._client

    async def health(self) -> HealthInfo:
        return await self._require_transport().health()

    # --- Users --------------------------------------------------------------

    async def login(self, username: str, password: str) -> str:
        return await self._require_transport().login(username, password)

    async def create_user(self, username: str, password: str, role: str = "user") -> int:
        return await self._require_transport().create_user(username, password, role)

    async def delete_user(self, username: str) -> bool:
        return await self._require_transport().delete_user(username)

    async def get_user(self, username: str) -> dict[str, Any]:
        return await self._require_transport().get_user(username)

    async def list_users(self) -> list[dict[str, Any]]:
        return await self._require_transport().list_users()

    # --- Nodes --------------------------------------------------------------

    async def insert(
        self,
        node_id: NodeIdLike,
        text: str,
        metadata: Any,
        options: InsertOptions | None = None,
    ) -> InsertResult:
        transport = self._require_transport()
        opts = options or InsertOptions()
        opts = replace(opts, run_id=self._resolve_run_id(opts.run_id))
        return await transport.insert(node_id, text, metadata, opts)

    async def search(
        self,
        query: str,
        user_id: NodeIdLike,
        options: SearchOptions | None = None,
    ) -> list[SearchResultItem]:
        transport = self._require_transport()
        opts = options or SearchOptions()
        opts = replace(opts, run_id=self._resolve_run_id(opts.run_id))
        return await transport.search(query, user_id, opts)

    async def delete(self, node_id: NodeIdLike, session_id: str | None = None) -> bool:
        return await self._require_transport().delete(node_id, session_id)

    async def delete_run(self, run_id: str | None = None) -> DeleteRunResult:
        """
        Delete everything written under a run scope.

        Raises:
            ValidationError: Neither ``run_id`` nor a default scope is set
        """
        target = self._resolve_run_id(run_id)
        if not target:
            raise ValidationError("run_id is required for delete_run")
        return await self._require_transport().delete_run(target)

    # --- Sessions -----------------------------------------------------------

    async def create_session(self, parent_session_id: str | None = None) -> str:
        return await self._require_transport().create_session(parent_session_id)

    async def snapshot_session(self, session_id: str, path: str) -> bool:
        return await self._require_transport().snapshot_session(session_id, path)

    async def load_session(self, path: str) -> str:
        return await self._require_transport().load_session(path)

    async def commit_session(self, session_id: str, merge_strategy: str = "overwrite") -> bool:
        return await self._require_transport().commit_session(session_id, merge_strategy)

    async def drop_session(self, session_id: str) -> bool:
        return await self._require_transport().drop_session(session_id)

    # --- Sparse distributed memory -------------------------------------------

    async def write_memory(
        self, address: BitVector, data: BitVector, user_id: NodeIdLike = 1
    ) -> OperationResult:
        return await self._require_transport().write_memory(address, data, user_id)

    async def read_memory(self, address: BitVector, user_id: NodeIdLike = 1) -> BitVector:
        return await self._require_transport().read_memory(address, user_id)

    # --- Agent memory -------------------------------------------------------

    async def add_memory(
        self,
        session_id: str,
        agent_id: str,
        content: str,
        metadata: dict[str, str] | None = None,
        ttl_seconds: int | None = None,
    ) -> AddMemoryResult:
        return await self._require_transport().add_memory(
            session_id, agent_id, content, metadata, ttl_seconds
        )

    async def get_memory(
        self, session_id: str, query: MemoryQuery | None = None
    ) -> list[MemoryEntry]:
        return await self._require_transport().get_memory(session_id, query)

    async def clear_memory(self, session_id: str) -> OperationResult:
        return await self._require_transport().clear_memory(session_id)

    def watch_memory(self, session_id: str) -> AsyncIterator[MemoryEvent]:
        return self._require_transport().watch_memory(session_id)

    # --- Graph --------------------------------------------------------------

    async def add_edge(
        self,
        from_node: NodeIdLike,
        to_node: NodeIdLike,
        relation: str,
        weight: float = 1.0,
    ) -> bool:
        return await self._require_transport().add_edge(from_node, to_node, relation, weight)

    async def get_neighbors(
        self, node_id: NodeIdLike, relation: str | None = None
    ) -> list[int]:
        return await self._require_transport().get_neighbors(node_id, relation)

    async def traverse(self, start_node: NodeIdLike, max_depth: int = 1) -> list[int]:
        return await self._require_transport().traverse(start_node, max_depth)

    async def sample_graph(self, limit: int = 100) -> dict[str, Any]:
        return await self._require_transport().sample_graph(limit)

    # --- Streaming ----------------------------------------------------------

    def subscribe(self, options: SubscribeOptions | None = None) -> AsyncIterator[GraphEvent]:
        return self._require_transport().subscribe(options)

    async def batch_insert(
        self,
        documents: Sequence[Document | Mapping[str, Any]],
        user_id: NodeIdLike = 1,
    ) -> BatchInsertResult:
        return await self._require_transport().batch_insert(documents, user_id)

    # --- ACL ----------------------------------------------------------------

    async def grant_permission(
        self,
        node_id: NodeIdLike,
        user_id: NodeIdLike,
        permissions: Permissions | Mapping[str, bool],
    ) -> bool:
        return await self._require_transport().grant_permission(node_id, user_id, permissions)

    async def revoke_permission(self, node_id: NodeIdLike, user_id: NodeIdLike) -> bool:
        return await self._require_transport().revoke_permission(node_id, user_id)

    async def check_permission(
        self, node_id: NodeIdLike, user_id: NodeIdLike, permission_type: str
    ) -> bool:
        return await self._require_transport().check_permission(
            node_id, user_id, permission_type
        )


__all__ = ["RiceDBClient"]
