"""
Storage transport abstraction shared by the gRPC and HTTP clients.

Defines the records exchanged with RiceDB, the option records that carry each
operation's optional parameters, and the StorageTransport contract that both
transports implement identically. Operations a transport cannot perform are
listed in its ``unsupported_operations`` and raise UnsupportedOperationError
before any network I/O.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from .bit_vector import BitVector
from .errors import UnsupportedOperationError, ValidationError

if TYPE_CHECKING:
    from .bulk_ingest import IngestReport

logger = logging.getLogger(__name__)

NodeIdLike = int | str

_U64_LIMIT = 1 << 64


class TransportKind(Enum):
    """Which wire transport a client uses."""

    GRPC = "grpc"
    HTTP = "http"
    AUTO = "auto"


def to_node_id(value: NodeIdLike) -> int:
    """
    Normalize a 64-bit identifier given as int or decimal string.

    Raises:
        ValidationError: Not an integer, or outside [0, 2**64)
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid node id: {value!r}")
    if isinstance(value, str):
        digits = value.strip()
        if not (digits.isascii() and digits.isdecimal()):
            raise ValidationError(f"Invalid node id: {value!r}")
        number = int(digits)
    elif isinstance(value, int):
        number = value
    else:
        raise ValidationError(f"Invalid node id type: {type(value).__name__}")
    if not 0 <= number < _U64_LIMIT:
        raise ValidationError(f"Node id out of 64-bit range: {number}")
    return number


# =============================================================================
# Option records
# =============================================================================


@dataclass(frozen=True)
class InsertOptions:
    """Optional parameters of insert()."""

    user_id: NodeIdLike = 1
    session_id: str | None = None
    embedding: list[float] | None = None
    run_id: str | None = None


@dataclass(frozen=True)
class SearchOptions:
    """Optional parameters of search()."""

    k: int = 10
    session_id: str | None = None
    filter: dict[str, Any] | None = None
    query_embedding: list[float] | None = None
    run_id: str | None = None


@dataclass(frozen=True)
class SubscribeOptions:
    """Filter for the live event subscription."""

    filter_type: str = "all"
    node_id: NodeIdLike | None = None
    query_text: str = ""
    threshold: float = 0.8


@dataclass(frozen=True)
class MemoryQuery:
    """Paging and filtering for get_memory()."""

    limit: int = 50
    after: int = 0
    filter: dict[str, str] = field(default_factory=dict)


# =============================================================================
# Records
# =============================================================================


@dataclass
class HealthInfo:
    """Server health."""

    status: str
    version: str


@dataclass
class Permissions:
    """Per-node, per-user access flags."""

    read: bool = False
    write: bool = False
    delete: bool = False

    @classmethod
    def coerce(cls, value: Permissions | Mapping[str, bool] | None) -> Permissions:
        """Accept a Permissions or a {read, write, delete} mapping."""
        if value is None:
            return cls()
        if isinstance(value, Permissions):
            return value
        return cls(
            read=bool(value.get("read", False)),
            write=bool(value.get("write", False)),
            delete=bool(value.get("delete", False)),
        )

    def to_dict(self) -> dict[str, bool]:
        """Wire form."""
        return {"read": self.read, "write": self.write, "delete": self.delete}


@dataclass
class PermissionGrant:
    """One item of batch_grant()."""

    node_id: NodeIdLike
    user_id: NodeIdLike
    permissions: Permissions = field(default_factory=Permissions)


@dataclass
class UserPermission:
    """A user and the permissions insert_with_acl() gives them."""

    user_id: NodeIdLike
    permissions: Permissions = field(default_factory=Permissions)


@dataclass
class GrantOutcome:
    """A grant that completed."""

    index: int
    node_id: NodeIdLike
    user_id: NodeIdLike
    success: bool
    result: bool


@dataclass
class GrantFailure:
    """A grant that raised."""

    index: int
    node_id: NodeIdLike
    user_id: NodeIdLike
    error: str


@dataclass
class BatchGrantResult:
    """Itemized outcome of batch_grant(); never fails as a whole."""

    total: int
    successful: int
    failed: int
    results: list[GrantOutcome] = field(default_factory=list)
    errors: list[GrantFailure] = field(default_factory=list)


@dataclass
class InsertResult:
    """Result of insert() and insert_with_acl()."""

    success: bool
    node_id: int
    message: str
    acl_grants: BatchGrantResult | None = None
    acl_users: list[UserPermission] | None = None


@dataclass
class SearchResultItem:
    """A search hit."""

    id: int
    similarity: float
    metadata: Any = None


@dataclass
class DeleteRunResult:
    """Result of delete_run()."""

    success: bool
    message: str
    count: int


@dataclass
class OperationResult:
    """Generic success flag with server message."""

    success: bool
    message: str = ""


@dataclass
class MemoryEntry:
    """Short-lived agent note attached to a session."""

    id: str
    session_id: str
    agent_id: str
    content: str
    timestamp: int
    metadata: dict[str, str] = field(default_factory=dict)
    expires_at: int | None = None


@dataclass
class AddMemoryResult:
    """Result of add_memory()."""

    success: bool
    message: str
    entry: MemoryEntry | None


@dataclass
class MemoryEvent:
    """Change notification from watch_memory()."""

    event_type: str
    entry: MemoryEntry | None = None


@dataclass
class EventNode:
    """Node snapshot carried by a subscription event."""

    id: int
    metadata: Any = None


@dataclass
class GraphEvent:
    """Change notification from subscribe()."""

    event_type: str
    node_id: int
    node: EventNode | None = None


@dataclass
class BatchInsertResult:
    """Aggregate acknowledgement of batch_insert()."""

    count: int
    node_ids: list[int] = field(default_factory=list)


@dataclass
class Document:
    """One item of a bulk insert."""

    id: NodeIdLike
    text: str = ""
    metadata: Any = field(default_factory=dict)
    user_id: NodeIdLike | None = None


def coerce_document(doc: Document | Mapping[str, Any]) -> Document:
    """
    Accept a Document or a mapping with id/text/metadata/user_id keys.

    ``userId`` is accepted as an alias of ``user_id``.
    """
    if isinstance(doc, Document):
        return doc
    if "id" not in doc:
        raise ValidationError("Document is missing 'id'")
    user_id = doc.get("user_id", doc.get("userId"))
    return Document(
        id=doc["id"],
        text=doc.get("text") or "",
        metadata=doc.get("metadata", {}),
        user_id=user_id,
    )


# =============================================================================
# Contract
# =============================================================================


class StorageTransport(ABC):
    """
    Operation set every RiceDB transport provides.

    Subclasses set ``kind`` and list the operations they cannot perform in
    ``unsupported_operations``. ``subscribe`` and ``watch_memory`` are plain
    methods returning async iterators so an unsupported transport raises at
    call time rather than on first iteration.
    """

    kind: ClassVar[TransportKind]
    unsupported_operations: ClassVar[frozenset[str]] = frozenset()

    def __init__(self, host: str = "localhost", port: int = 3000) -> None:
        self.host = host
        self.port = port
        self.connected = False

    @property
    def address(self) -> str:
        """host:port of the server."""
        return f"{self.host}:{self.port}"

    def supports(self, operation: str) -> bool:
        """Whether this transport implements ``operation``."""
        return operation not in self.unsupported_operations

    def _unsupported(self, operation: str, hint: str = "") -> UnsupportedOperationError:
        return UnsupportedOperationError(operation, self.kind.value, hint)

    async def __aenter__(self) -> StorageTransport:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # --- Connection ---------------------------------------------------------

    @abstractmethod
    async def connect(self) -> bool:
        """Open the connection and verify the server answers."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the connection."""
        pass

    @abstractmethod
    async def health(self) -> HealthInfo:
        """Query server health."""
        pass

    # --- Users --------------------------------------------------------------

    @abstractmethod
    async def login(self, username: str, password: str) -> str:
        """Exchange credentials for a bearer token used by later calls."""
        pass

    @abstractmethod
    async def create_user(self, username: str, password: str, role: str = "user") -> int:
        """Create a user and return its id."""
        pass

    @abstractmethod
    async def delete_user(self, username: str) -> bool:
        pass

    @abstractmethod
    async def get_user(self, username: str) -> dict[str, Any]:
        pass

    @abstractmethod
    async def list_users(self) -> list[dict[str, Any]]:
        pass

    # --- Nodes --------------------------------------------------------------

    @abstractmethod
    async def insert(
        self,
        node_id: NodeIdLike,
        text: str,
        metadata: Any,
        options: InsertOptions | None = None,
    ) -> InsertResult:
        """
        Insert or replace a node.

        Args:
            node_id: 64-bit node id
            text: Text body to embed
            metadata: JSON-serializable document
            options: user, session, embedding and run scope

        Returns:
            InsertResult
        """
        pass

    @abstractmethod
    async def search(
        self,
        query: str,
        user_id: NodeIdLike,
        options: SearchOptions | None = None,
    ) -> list[SearchResultItem]:
        """
        Semantic search as ``user_id``.

        Args:
            query: Query text
            user_id: Searching user
            options: k, session, filter, query embedding and run scope

        Returns:
            Hits ordered by the server
        """
        pass

    @abstractmethod
    async def delete(self, node_id: NodeIdLike, session_id: str | None = None) -> bool:
        pass

    @abstractmethod
    async def delete_run(self, run_id: str) -> DeleteRunResult:
        """Delete every node written under ``run_id``."""
        pass

    # --- Sessions -----------------------------------------------------------

    @abstractmethod
    async def create_session(self, parent_session_id: str | None = None) -> str:
        """Create a working session, optionally forked from a parent."""
        pass

    @abstractmethod
    async def snapshot_session(self, session_id: str, path: str) -> bool:
        pass

    @abstractmethod
    async def load_session(self, path: str) -> str:
        pass

    @abstractmethod
    async def commit_session(self, session_id: str, merge_strategy: str = "overwrite") -> bool:
        pass

    @abstractmethod
    async def drop_session(self, session_id: str) -> bool:
        pass

    # --- Sparse distributed memory -------------------------------------------

    @abstractmethod
    async def write_memory(
        self, address: BitVector, data: BitVector, user_id: NodeIdLike = 1
    ) -> OperationResult:
        """Write ``data`` around ``address``."""
        pass

    @abstractmethod
    async def read_memory(self, address: BitVector, user_id: NodeIdLike = 1) -> BitVector:
        """Read the value stored around ``address``."""
        pass

    # --- Agent memory -------------------------------------------------------

    @abstractmethod
    async def add_memory(
        self,
        session_id: str,
        agent_id: str,
        content: str,
        metadata: dict[str, str] | None = None,
        ttl_seconds: int | None = None,
    ) -> AddMemoryResult:
        pass

    @abstractmethod
    async def get_memory(
        self, session_id: str, query: MemoryQuery | None = None
    ) -> list[MemoryEntry]:
        pass

    @abstractmethod
    async def clear_memory(self, session_id: str) -> OperationResult:
        pass

    @abstractmethod
    def watch_memory(self, session_id: str) -> AsyncIterator[MemoryEvent]:
        """Stream memory changes for a session until the consumer stops."""
        pass

    # --- Graph --------------------------------------------------------------

    @abstractmethod
    async def add_edge(
        self,
        from_node: NodeIdLike,
        to_node: NodeIdLike,
        relation: str,
        weight: float = 1.0,
    ) -> bool:
        pass

    @abstractmethod
    async def get_neighbors(
        self, node_id: NodeIdLike, relation: str | None = None
    ) -> list[int]:
        pass

    @abstractmethod
    async def traverse(self, start_node: NodeIdLike, max_depth: int = 1) -> list[int]:
        pass

    @abstractmethod
    async def sample_graph(self, limit: int = 100) -> dict[str, Any]:
        pass

    async def link(
        self,
        source_id: NodeIdLike,
        relation: str,
        target_id: NodeIdLike,
        weight: float = 1.0,
    ) -> bool:
        """Create a semantic link; alias of add_edge with subject-verb-object order."""
        return await self.add_edge(source_id, target_id, relation, weight)

    # --- Streaming ----------------------------------------------------------

    @abstractmethod
    def subscribe(self, options: SubscribeOptions | None = None) -> AsyncIterator[GraphEvent]:
        """Stream node events matching ``options`` until the consumer stops."""
        pass

    @abstractmethod
    async def batch_insert(
        self,
        documents: Sequence[Document | Mapping[str, Any]],
        user_id: NodeIdLike = 1,
    ) -> BatchInsertResult:
        """
        Insert many documents in one call.

        Args:
            documents: Documents; a document's own user_id wins over ``user_id``
            user_id: Owner for documents that do not name one

        Returns:
            Count inserted and generated ids
        """
        pass

    async def fast_ingest(
        self,
        documents: Sequence[Document | Mapping[str, Any]],
        batch_size: int = 500,
        concurrency: int = 4,
        user_id: NodeIdLike | None = None,
    ) -> IngestReport:
        """Bulk-load ``documents`` through concurrent batch_insert calls."""
        from .bulk_ingest import BulkIngestor

        ingestor = BulkIngestor(self, batch_size=batch_size, concurrency=concurrency)
        return await ingestor.ingest(documents, user_id=user_id)

    # --- ACL ----------------------------------------------------------------

    @abstractmethod
    async def grant_permission(
        self,
        node_id: NodeIdLike,
        user_id: NodeIdLike,
        permissions: Permissions | Mapping[str, bool],
    ) -> bool:
        pass

    @abstractmethod
    async def revoke_permission(self, node_id: NodeIdLike, user_id: NodeIdLike) -> bool:
        pass

    @abstractmethod
    async def check_permission(
        self, node_id: NodeIdLike, user_id: NodeIdLike, permission_type: str
    ) -> bool:
        pass

    async def batch_grant(self, grants: Sequence[PermissionGrant]) -> BatchGrantResult:
        """
        Grant permissions one at a time, capturing each outcome.

        A failing grant is recorded and the loop moves on; earlier grants
        are not rolled back.
        """
        results: list[GrantOutcome] = []
        errors: list[GrantFailure] = []

        for index, grant in enumerate(grants):
            try:
                granted = await self.grant_permission(
                    grant.node_id, grant.user_id, grant.permissions
                )
                results.append(
                    GrantOutcome(
                        index=index,
                        node_id=grant.node_id,
                        user_id=grant.user_id,
                        success=True,
                        result=granted,
                    )
                )
            except Exception as e:
                logger.debug("Grant %d on node %s failed: %s", index, grant.node_id, e)
                errors.append(
                    GrantFailure(
                        index=index,
                        node_id=grant.node_id,
                        user_id=grant.user_id,
                        error=str(e),
                    )
                )

        return BatchGrantResult(
            total=len(grants),
            successful=len(results),
            failed=len(errors),
            results=results,
            errors=errors,
        )

    async def insert_with_acl(
        self,
        node_id: NodeIdLike,
        text: str,
        metadata: Any,
        user_permissions: Sequence[UserPermission],
    ) -> InsertResult:
        """
        Insert a node owned by the first user and grant access to the rest.

        Raises:
            ValidationError: ``user_permissions`` is empty
        """
        if not user_permissions:
            raise ValidationError("At least one user permission must be provided")

        primary = user_permissions[0]
        result = await self.insert(node_id, text, metadata, InsertOptions(user_id=primary.user_id))

        additional = [
            PermissionGrant(node_id=node_id, user_id=p.user_id, permissions=p.permissions)
            for p in user_permissions[1:]
        ]
        if additional:
            result.acl_grants = await self.batch_grant(additional)

        result.acl_users = list(user_permissions)
        return result


__all__ = [
    "AddMemoryResult",
    "BatchGrantResult",
    "BatchInsertResult",
    "DeleteRunResult",
    "Document",
    "EventNode",
    "GrantFailure",
    "GrantOutcome",
    "GraphEvent",
    "HealthInfo",
    "InsertOptions",
    "InsertResult",
    "MemoryEntry",
    "MemoryEvent",
    "MemoryQuery",
    "NodeIdLike",
    "OperationResult",
    "PermissionGrant",
    "Permissions",
    "SearchOptions",
    "SearchResultItem",
    "StorageTransport",
    "SubscribeOptions",
    "TransportKind",
    "UserPermission",
    "coerce_document",
    "to_node_id",
]
