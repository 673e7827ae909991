"""
rice_storage: client access layer for the RiceDB semantic/graph store.

One operation set over two transports (gRPC and HTTP), with automatic
fallback, run-scope isolation, sparse-distributed-memory addressing and
concurrent bulk ingestion.
"""

from .bit_vector import ADDRESS_SIZE_U64, BitVector, hamming_distance
from .bulk_ingest import BulkIngestor, IngestReport
from .client import RiceDBClient
from .config import StorageConfig
from .errors import (
    NotConnectedError,
    RemoteError,
    RiceStorageError,
    TransportConnectionError,
    UnsupportedOperationError,
    ValidationError,
)
from .grpc_transport import GrpcTransport
from .http_transport import HttpTransport
from .storage_backend import (
    AddMemoryResult,
    BatchGrantResult,
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
    OperationResult,
    PermissionGrant,
    Permissions,
    SearchOptions,
    SearchResultItem,
    StorageTransport,
    SubscribeOptions,
    TransportKind,
    UserPermission,
)

__version__ = "0.1.0"

__all__ = [
    "ADDRESS_SIZE_U64",
    "AddMemoryResult",
    "BatchGrantResult",
    "BatchInsertResult",
    "BitVector",
    "BulkIngestor",
    "DeleteRunResult",
    "Document",
    "GraphEvent",
    "GrpcTransport",
    "HealthInfo",
    "HttpTransport",
    "IngestReport",
    "InsertOptions",
    "InsertResult",
    "MemoryEntry",
    "MemoryEvent",
    "MemoryQuery",
    "NotConnectedError",
    "OperationResult",
    "PermissionGrant",
    "Permissions",
    "RemoteError",
    "RiceDBClient",
    "RiceStorageError",
    "SearchOptions",
    "SearchResultItem",
    "StorageConfig",
    "StorageTransport",
    "SubscribeOptions",
    "TransportConnectionError",
    "TransportKind",
    "UnsupportedOperationError",
    "UserPermission",
    "ValidationError",
    "hamming_distance",
]
