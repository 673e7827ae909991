"""
gRPC transport for RiceDB.

One ``grpc.aio`` channel per instance, multiplexing every call. Metadata
documents travel as UTF-8 JSON bytes. Streaming RPCs back subscribe(),
watch_memory() and batch_insert(). User lookup, listing and graph sampling
are not exposed by the gRPC service.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import aclosing
from typing import Any

import grpc
from google.protobuf.message import Message

from . import proto
from .bit_vector import BitVector
from .errors import NotConnectedError, RemoteError, TransportConnectionError
from .storage_backend import (
    AddMemoryResult,
    BatchInsertResult,
    DeleteRunResult,
    Document,
    EventNode,
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

MAX_MESSAGE_BYTES = 50 * 1024 * 1024

ChannelFactory = Callable[[str, list[tuple[str, Any]]], Any]


def _insecure_channel(address: str, options: list[tuple[str, Any]]) -> grpc.aio.Channel:
    return grpc.aio.insecure_channel(address, options=options)


def _encode_metadata(metadata: Any) -> bytes:
    return json.dumps(metadata).encode("utf-8")


def _decode_metadata(raw: bytes) -> Any:
    if not raw:
        return None
    return json.loads(raw.decode("utf-8"))


def _entry_from_proto(entry: Message) -> MemoryEntry:
    return MemoryEntry(
        id=entry.id,
        session_id=entry.session_id,
        agent_id=entry.agent_id,
        content=entry.content,
        timestamp=entry.timestamp,
        metadata=dict(entry.metadata),
        expires_at=entry.expires_at or None,
    )


def _remote_error(error: grpc.aio.AioRpcError) -> RemoteError:
    return RemoteError(error.details() or "", status=error.code().name)


class GrpcTransport(StorageTransport):
    """
    RiceDB client over a persistent gRPC channel.

    Args:
        host: Server host
        port: gRPC port
        token: Bearer token sent as ``authorization`` metadata
        timeout: Per-call deadline in seconds (not applied to streams)
        channel_factory: Builds the channel from (address, options)
    """

    kind = TransportKind.GRPC
    unsupported_operations = frozenset({"get_user", "list_users", "sample_graph"})

    def __init__(
        self,
        host: str = "localhost",
        port: int = 50051,
        token: str | None = None,
        timeout: float = 30.0,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        super().__init__(host, port)
        self._token = token
        self._timeout = timeout
        self._channel_factory = channel_factory or _insecure_channel
        self._channel: Any = None
        self._methods: dict[str, Any] = {}
        self._connect_lock = asyncio.Lock()

    # --- Connection ---------------------------------------------------------

    async def connect(self) -> bool:
        async with self._connect_lock:
            if self.connected:
                return True

            options = [
                ("grpc.max_send_message_length", MAX_MESSAGE_BYTES),
                ("grpc.max_receive_message_length", MAX_MESSAGE_BYTES),
            ]
            self._channel = self._channel_factory(self.address, options)
            self._bind_methods(self._channel)

            try:
                await self.health()
            except Exception as e:
                await self._close_channel()
                raise TransportConnectionError("grpc", self.address, str(e)) from e

            self.connected = True
            logger.info("Connected to RiceDB over gRPC at %s", self.address)
            return True

    async def disconnect(self) -> None:
        await self._close_channel()

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        self._methods = {}
        self.connected = False
        if channel is not None:
            await channel.close()

    def _bind_methods(self, channel: Any) -> None:
        for name, (cardinality, request_type, response_type) in proto.METHODS.items():
            factory = getattr(channel, cardinality)
            self._methods[name] = factory(
                proto.method_path(name),
                request_serializer=proto.MESSAGES[request_type].SerializeToString,
                response_deserializer=proto.MESSAGES[response_type].FromString,
            )

    def _method(self, name: str) -> Any:
        if self._channel is None:
            raise NotConnectedError()
        return self._methods[name]

    def _call_metadata(self) -> tuple[tuple[str, str], ...] | None:
        if self._token:
            return (("authorization", f"Bearer {self._token}"),)
        return None

    async def _unary(self, name: str, request: Message) -> Any:
        method = self._method(name)
        try:
            return await method(request, metadata=self._call_metadata(), timeout=self._timeout)
        except grpc.aio.AioRpcError as e:
            raise _remote_error(e) from e

    async def _server_stream(self, method: Any, request: Message) -> AsyncIterator[Any]:
        call = method(request, metadata=self._call_metadata())
        try:
            async for message in call:
                yield message
        except grpc.aio.AioRpcError as e:
            # Closing the iterator cancels locally; CANCELLED here came from the server.
            raise _remote_error(e) from e
        finally:
            call.cancel()

    async def health(self) -> HealthInfo:
        response = await self._unary("Health", proto.Empty())
        return HealthInfo(status=response.status, version=response.version)

    # --- Users --------------------------------------------------------------

    async def login(self, username: str, password: str) -> str:
        response = await self._unary(
            "Login", proto.LoginRequest(username=username, password=password)
        )
        self._token = response.token
        return self._token

    async def create_user(self, username: str, password: str, role: str = "user") -> int:
        response = await self._unary(
            "CreateUser",
            proto.CreateUserRequest(username=username, password=password, role=role),
        )
        return response.user_id

    async def delete_user(self, username: str) -> bool:
        response = await self._unary("DeleteUser", proto.DeleteUserRequest(username=username))
        return response.success

    async def get_user(self, username: str) -> dict[str, Any]:
        raise self._unsupported("get_user", "Use HTTP.")

    async def list_users(self) -> list[dict[str, Any]]:
        raise self._unsupported("list_users", "Use HTTP.")

    # --- Nodes --------------------------------------------------------------

    async def insert(
        self,
        node_id: NodeIdLike,
        text: str,
        metadata: Any,
        options: InsertOptions | None = None,
    ) -> InsertResult:
        opts = options or InsertOptions()
        request = proto.InsertRequest(
            id=to_node_id(node_id),
            text=text,
            metadata=_encode_metadata(metadata),
            user_id=to_node_id(opts.user_id),
            session_id=opts.session_id or "",
            embedding=opts.embedding or [],
            run_id=opts.run_id or "",
        )
        response = await self._unary("Insert", request)
        if not response.success:
            raise RemoteError(response.message or "Insert failed")
        return InsertResult(
            success=response.success, node_id=response.node_id, message=response.message
        )

    async def search(
        self,
        query: str,
        user_id: NodeIdLike,
        options: SearchOptions | None = None,
    ) -> list[SearchResultItem]:
        opts = options or SearchOptions()
        request = proto.SearchRequest(
            query_text=query,
            user_id=to_node_id(user_id),
            k=opts.k,
            session_id=opts.session_id or "",
            filter=json.dumps(opts.filter) if opts.filter else "",
            query_embedding=opts.query_embedding or [],
            run_id=opts.run_id or "",
        )
        response = await self._unary("Search", request)
        return [
            SearchResultItem(
                id=r.id, similarity=r.similarity, metadata=_decode_metadata(r.metadata)
            )
            for r in response.results
        ]

    async def delete(self, node_id: NodeIdLike, session_id: str | None = None) -> bool:
        response = await self._unary(
            "DeleteNode",
            proto.DeleteNodeRequest(node_id=to_node_id(node_id), session_id=session_id or ""),
        )
        return response.success

    async def delete_run(self, run_id: str) -> DeleteRunResult:
        response = await self._unary("DeleteRun", proto.DeleteRunRequest(run_id=run_id))
        return DeleteRunResult(
            success=response.success, message=response.message, count=response.count
        )

    # --- Sessions -----------------------------------------------------------

    async def create_session(self, parent_session_id: str | None = None) -> str:
        response = await self._unary(
            "CreateSession",
            proto.CreateSessionRequest(parent_session_id=parent_session_id or ""),
        )
        return response.session_id

    async def snapshot_session(self, session_id: str, path: str) -> bool:
        response = await self._unary(
            "SnapshotSession", proto.SnapshotSessionRequest(session_id=session_id, path=path)
        )
        return response.success

    async def load_session(self, path: str) -> str:
        response = await self._unary("LoadSession", proto.LoadSessionRequest(path=path))
        return response.session_id

    async def commit_session(self, session_id: str, merge_strategy: str = "overwrite") -> bool:
        response = await self._unary(
            "CommitSession",
            proto.CommitSessionRequest(session_id=session_id, merge_strategy=merge_strategy),
        )
        return response.success

    async def drop_session(self, session_id: str) -> bool:
        response = await self._unary(
            "DropSession", proto.DropSessionRequest(session_id=session_id)
        )
        return response.success

    # --- Sparse distributed memory -------------------------------------------

    async def write_memory(
        self, address: BitVector, data: BitVector, user_id: NodeIdLike = 1
    ) -> OperationResult:
        request = proto.WriteMemoryRequest(
            address=proto.BitVector(chunks=address.to_list()),
            data=proto.BitVector(chunks=data.to_list()),
            user_id=to_node_id(user_id),
        )
        response = await self._unary("WriteMemory", request)
        return OperationResult(success=response.success, message=response.message)

    async def read_memory(self, address: BitVector, user_id: NodeIdLike = 1) -> BitVector:
        request = proto.ReadMemoryRequest(
            address=proto.BitVector(chunks=address.to_list()),
            user_id=to_node_id(user_id),
        )
        response = await self._unary("ReadMemory", request)
        return BitVector(response.data.chunks)

    # --- Agent memory -------------------------------------------------------

    async def add_memory(
        self,
        session_id: str,
        agent_id: str,
        content: str,
        metadata: dict[str, str] | None = None,
        ttl_seconds: int | None = None,
    ) -> AddMemoryResult:
        request = proto.AddMemoryRequest(
            session_id=session_id,
            agent_id=agent_id,
            content=content,
            metadata=metadata or {},
            ttl_seconds=ttl_seconds or 0,
        )
        response = await self._unary("AddMemory", request)
        entry = _entry_from_proto(response.entry) if response.HasField("entry") else None
        return AddMemoryResult(success=response.success, message=response.message, entry=entry)

    async def get_memory(
        self, session_id: str, query: MemoryQuery | None = None
    ) -> list[MemoryEntry]:
        q = query or MemoryQuery()
        request = proto.GetMemoryRequest(
            session_id=session_id,
            limit=q.limit,
            after_timestamp=q.after,
            filter=q.filter,
        )
        response = await self._unary("GetMemory", request)
        return [_entry_from_proto(e) for e in response.entries]

    async def clear_memory(self, session_id: str) -> OperationResult:
        response = await self._unary("ClearMemory", proto.SessionRequest(session_id=session_id))
        return OperationResult(success=response.success, message=response.message)

    def watch_memory(self, session_id: str) -> AsyncIterator[MemoryEvent]:
        method = self._method("WatchMemory")
        return self._watch_memory(method, proto.SessionRequest(session_id=session_id))

    async def _watch_memory(self, method: Any, request: Message) -> AsyncIterator[MemoryEvent]:
        async with aclosing(self._server_stream(method, request)) as stream:
            async for event in stream:
                entry = _entry_from_proto(event.entry) if event.HasField("entry") else None
                yield MemoryEvent(event_type=event.event_type, entry=entry)

    # --- Graph --------------------------------------------------------------

    async def add_edge(
        self,
        from_node: NodeIdLike,
        to_node: NodeIdLike,
        relation: str,
        weight: float = 1.0,
    ) -> bool:
        request = proto.AddEdgeRequest(
            from_node=to_node_id(from_node),
            to_node=to_node_id(to_node),
            relation=relation,
            weight=weight,
        )
        response = await self._unary("AddEdge", request)
        return response.success

    async def get_neighbors(
        self, node_id: NodeIdLike, relation: str | None = None
    ) -> list[int]:
        response = await self._unary(
            "GetNeighbors",
            proto.GetNeighborsRequest(node_id=to_node_id(node_id), relation=relation or ""),
        )
        return list(response.neighbors)

    async def traverse(self, start_node: NodeIdLike, max_depth: int = 1) -> list[int]:
        response = await self._unary(
            "TraverseGraph",
            proto.TraverseRequest(start=to_node_id(start_node), max_depth=max_depth),
        )
        return list(response.visited)

    async def sample_graph(self, limit: int = 100) -> dict[str, Any]:
        raise self._unsupported("sample_graph", "Use HTTP.")

    # --- Streaming ----------------------------------------------------------

    def subscribe(self, options: SubscribeOptions | None = None) -> AsyncIterator[GraphEvent]:
        opts = options or SubscribeOptions()
        method = self._method("Subscribe")
        request = proto.SubscribeRequest(
            filter_type=opts.filter_type,
            node_id=to_node_id(opts.node_id) if opts.node_id is not None else 0,
            query_text=opts.query_text,
            threshold=opts.threshold,
        )
        return self._subscribe(method, request)

    async def _subscribe(self, method: Any, request: Message) -> AsyncIterator[GraphEvent]:
        async with aclosing(self._server_stream(method, request)) as stream:
            async for event in stream:
                node = None
                if event.HasField("node"):
                    node = EventNode(
                        id=event.node.id, metadata=_decode_metadata(event.node.metadata)
                    )
                yield GraphEvent(event_type=event.type, node_id=event.node_id, node=node)

    async def batch_insert(
        self,
        documents: Sequence[Document | Mapping[str, Any]],
        user_id: NodeIdLike = 1,
    ) -> BatchInsertResult:
        method = self._method("BatchInsert")
        default_user = to_node_id(user_id)

        requests = []
        for raw in documents:
            doc = coerce_document(raw)
            requests.append(
                proto.InsertRequest(
                    id=to_node_id(doc.id),
                    text=doc.text,
                    metadata=_encode_metadata(doc.metadata),
                    user_id=to_node_id(doc.user_id) if doc.user_id is not None else default_user,
                )
            )

        try:
            response = await method(
                iter(requests), metadata=self._call_metadata(), timeout=self._timeout
            )
        except grpc.aio.AioRpcError as e:
            raise _remote_error(e) from e

        logger.debug("gRPC batch insert acknowledged %d of %d", response.count, len(requests))
        return BatchInsertResult(count=response.count, node_ids=list(response.node_ids))

    # --- ACL ----------------------------------------------------------------

    async def grant_permission(
        self,
        node_id: NodeIdLike,
        user_id: NodeIdLike,
        permissions: Permissions | Mapping[str, bool],
    ) -> bool:
        flags = Permissions.coerce(permissions)
        request = proto.GrantPermissionRequest(
            node_id=to_node_id(node_id),
            target_user_id=to_node_id(user_id),
            permissions=proto.Permissions(**flags.to_dict()),
        )
        response = await self._unary("GrantPermission", request)
        return response.success

    async def revoke_permission(self, node_id: NodeIdLike, user_id: NodeIdLike) -> bool:
        request = proto.RevokePermissionRequest(
            node_id=to_node_id(node_id), target_user_id=to_node_id(user_id)
        )
        response = await self._unary("RevokePermission", request)
        return response.success

    async def check_permission(
        self, node_id: NodeIdLike, user_id: NodeIdLike, permission_type: str
    ) -> bool:
        # The gRPC service has no CheckPermission RPC; HTTP answers this query.
        logger.warning(
            "check_permission not supported via gRPC, assuming False for node %s", node_id
        )
        return False


__all__ = ["GrpcTransport", "MAX_MESSAGE_BYTES"]
