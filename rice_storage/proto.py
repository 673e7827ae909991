"""
Protocol buffer schema for the RiceDB gRPC service.

The message types are declared in a compact table and compiled into a
private descriptor pool at import time, so the client needs no generated
``_pb2`` modules. Message classes are reachable as module attributes::

    from rice_storage import proto

    request = proto.InsertRequest(id=7, text="hello")
"""

from __future__ import annotations

from typing import Any

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import Message

PACKAGE = "ricedb"
SERVICE = f"{PACKAGE}.RiceDB"

_F = descriptor_pb2.FieldDescriptorProto

_SCALARS = {
    "string": _F.TYPE_STRING,
    "bytes": _F.TYPE_BYTES,
    "bool": _F.TYPE_BOOL,
    "float": _F.TYPE_FLOAT,
    "int64": _F.TYPE_INT64,
    "uint32": _F.TYPE_UINT32,
    "uint64": _F.TYPE_UINT64,
}

# Field numbers follow declaration order, starting at 1.
_SCHEMA: dict[str, list[tuple[str, str]]] = {
    "Empty": [],
    "HealthResponse": [("status", "string"), ("version", "string")],
    "StatusResponse": [("success", "bool"), ("message", "string")],
    # Users
    "LoginRequest": [("username", "string"), ("password", "string")],
    "LoginResponse": [("token", "string"), ("user_id", "uint64"), ("role", "string")],
    "CreateUserRequest": [("username", "string"), ("password", "string"), ("role", "string")],
    "CreateUserResponse": [("success", "bool"), ("user_id", "uint64")],
    "DeleteUserRequest": [("username", "string")],
    # Nodes
    "InsertRequest": [
        ("id", "uint64"),
        ("text", "string"),
        ("metadata", "bytes"),
        ("user_id", "uint64"),
        ("session_id", "string"),
        ("embedding", "repeated float"),
        ("run_id", "string"),
    ],
    "InsertResponse": [("success", "bool"), ("node_id", "uint64"), ("message", "string")],
    "SearchRequest": [
        ("query_text", "string"),
        ("user_id", "uint64"),
        ("k", "uint32"),
        ("session_id", "string"),
        ("filter", "string"),
        ("query_embedding", "repeated float"),
        ("run_id", "string"),
    ],
    "SearchResult": [("id", "uint64"), ("similarity", "float"), ("metadata", "bytes")],
    "SearchResponse": [("results", "repeated SearchResult")],
    "DeleteNodeRequest": [("node_id", "uint64"), ("session_id", "string")],
    "DeleteRunRequest": [("run_id", "string")],
    "DeleteRunResponse": [("success", "bool"), ("message", "string"), ("count", "uint64")],
    # Sessions
    "CreateSessionRequest": [("parent_session_id", "string")],
    "SessionResponse": [("session_id", "string")],
    "SnapshotSessionRequest": [("session_id", "string"), ("path", "string")],
    "LoadSessionRequest": [("path", "string")],
    "CommitSessionRequest": [("session_id", "string"), ("merge_strategy", "string")],
    "DropSessionRequest": [("session_id", "string")],
    # Sparse distributed memory
    "BitVector": [("chunks", "repeated uint64")],
    "WriteMemoryRequest": [("address", "BitVector"), ("data", "BitVector"), ("user_id", "uint64")],
    "ReadMemoryRequest": [("address", "BitVector"), ("user_id", "uint64")],
    "ReadMemoryResponse": [("data", "BitVector")],
    # Agent memory
    "MemoryEntry": [
        ("id", "string"),
        ("session_id", "string"),
        ("agent_id", "string"),
        ("content", "string"),
        ("timestamp", "int64"),
        ("metadata", "map<string,string>"),
        ("expires_at", "int64"),
    ],
    "AddMemoryRequest": [
        ("session_id", "string"),
        ("agent_id", "string"),
        ("content", "string"),
        ("metadata", "map<string,string>"),
        ("ttl_seconds", "int64"),
    ],
    "AddMemoryResponse": [("success", "bool"), ("message", "string"), ("entry", "MemoryEntry")],
    "GetMemoryRequest": [
        ("session_id", "string"),
        ("limit", "uint32"),
        ("after_timestamp", "int64"),
        ("filter", "map<string,string>"),
    ],
    "GetMemoryResponse": [("entries", "repeated MemoryEntry")],
    "SessionRequest": [("session_id", "string")],
    "MemoryEvent": [("event_type", "string"), ("entry", "MemoryEntry")],
    # Graph
    "AddEdgeRequest": [
        ("from_node", "uint64"),
        ("to_node", "uint64"),
        ("relation", "string"),
        ("weight", "float"),
    ],
    "GetNeighborsRequest": [("node_id", "uint64"), ("relation", "string")],
    "NeighborsResponse": [("neighbors", "repeated uint64")],
    "TraverseRequest": [("start", "uint64"), ("max_depth", "uint32")],
    "TraverseResponse": [("visited", "repeated uint64")],
    # Pub/sub
    "SubscribeRequest": [
        ("filter_type", "string"),
        ("node_id", "uint64"),
        ("vector", "repeated float"),
        ("query_text", "string"),
        ("threshold", "float"),
    ],
    "EventNode": [("id", "uint64"), ("metadata", "bytes")],
    "Event": [("type", "string"), ("node_id", "uint64"), ("node", "EventNode")],
    # Batch
    "BatchInsertResponse": [("count", "uint32"), ("node_ids", "repeated uint64")],
    # ACL
    "Permissions": [("read", "bool"), ("write", "bool"), ("delete", "bool")],
    "GrantPermissionRequest": [
        ("node_id", "uint64"),
        ("target_user_id", "uint64"),
        ("permissions", "Permissions"),
    ],
    "RevokePermissionRequest": [("node_id", "uint64"), ("target_user_id", "uint64")],
}

UNARY_UNARY = "unary_unary"
UNARY_STREAM = "unary_stream"
STREAM_UNARY = "stream_unary"

# rpc name -> (cardinality, request type, response type)
METHODS: dict[str, tuple[str, str, str]] = {
    "Health": (UNARY_UNARY, "Empty", "HealthResponse"),
    "Login": (UNARY_UNARY, "LoginRequest", "LoginResponse"),
    "CreateUser": (UNARY_UNARY, "CreateUserRequest", "CreateUserResponse"),
    "DeleteUser": (UNARY_UNARY, "DeleteUserRequest", "StatusResponse"),
    "Insert": (UNARY_UNARY, "InsertRequest", "InsertResponse"),
    "Search": (UNARY_UNARY, "SearchRequest", "SearchResponse"),
    "DeleteNode": (UNARY_UNARY, "DeleteNodeRequest", "StatusResponse"),
    "DeleteRun": (UNARY_UNARY, "DeleteRunRequest", "DeleteRunResponse"),
    "CreateSession": (UNARY_UNARY, "CreateSessionRequest", "SessionResponse"),
    "SnapshotSession": (UNARY_UNARY, "SnapshotSessionRequest", "StatusResponse"),
    "LoadSession": (UNARY_UNARY, "LoadSessionRequest", "SessionResponse"),
    "CommitSession": (UNARY_UNARY, "CommitSessionRequest", "StatusResponse"),
    "DropSession": (UNARY_UNARY, "DropSessionRequest", "StatusResponse"),
    "WriteMemory": (UNARY_UNARY, "WriteMemoryRequest", "StatusResponse"),
    "ReadMemory": (UNARY_UNARY, "ReadMemoryRequest", "ReadMemoryResponse"),
    "AddMemory": (UNARY_UNARY, "AddMemoryRequest", "AddMemoryResponse"),
    "GetMemory": (UNARY_UNARY, "GetMemoryRequest", "GetMemoryResponse"),
    "ClearMemory": (UNARY_UNARY, "SessionRequest", "StatusResponse"),
    "WatchMemory": (UNARY_STREAM, "SessionRequest", "MemoryEvent"),
    "AddEdge": (UNARY_UNARY, "AddEdgeRequest", "StatusResponse"),
    "GetNeighbors": (UNARY_UNARY, "GetNeighborsRequest", "NeighborsResponse"),
    "TraverseGraph": (UNARY_UNARY, "TraverseRequest", "TraverseResponse"),
    "Subscribe": (UNARY_STREAM, "SubscribeRequest", "Event"),
    "BatchInsert": (STREAM_UNARY, "InsertRequest", "BatchInsertResponse"),
    "GrantPermission": (UNARY_UNARY, "GrantPermissionRequest", "StatusResponse"),
    "RevokePermission": (UNARY_UNARY, "RevokePermissionRequest", "StatusResponse"),
}


def method_path(name: str) -> str:
    """Fully qualified gRPC method path."""
    return f"/{SERVICE}/{name}"


def _map_entry_name(field_name: str) -> str:
    return "".join(part.capitalize() for part in field_name.split("_")) + "Entry"


def _add_field(
    message: descriptor_pb2.DescriptorProto,
    message_name: str,
    field_name: str,
    number: int,
    field_type: str,
) -> None:
    if field_type.startswith("map<"):
        key_type, value_type = (part.strip() for part in field_type[4:-1].split(","))
        entry_name = _map_entry_name(field_name)
        entry = message.nested_type.add(name=entry_name)
        entry.options.map_entry = True
        entry.field.add(name="key", number=1, label=_F.LABEL_OPTIONAL, type=_SCALARS[key_type])
        entry.field.add(
            name="value", number=2, label=_F.LABEL_OPTIONAL, type=_SCALARS[value_type]
        )
        message.field.add(
            name=field_name,
            number=number,
            label=_F.LABEL_REPEATED,
            type=_F.TYPE_MESSAGE,
            type_name=f".{PACKAGE}.{message_name}.{entry_name}",
        )
        return

    label = _F.LABEL_OPTIONAL
    if field_type.startswith("repeated "):
        label = _F.LABEL_REPEATED
        field_type = field_type.removeprefix("repeated ")

    if field_type in _SCALARS:
        message.field.add(name=field_name, number=number, label=label, type=_SCALARS[field_type])
    else:
        message.field.add(
            name=field_name,
            number=number,
            label=label,
            type=_F.TYPE_MESSAGE,
            type_name=f".{PACKAGE}.{field_type}",
        )


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name=f"{PACKAGE}/{PACKAGE}.proto",
        package=PACKAGE,
        syntax="proto3",
    )
    for message_name, fields in _SCHEMA.items():
        message = file_proto.message_type.add(name=message_name)
        for number, (field_name, field_type) in enumerate(fields, start=1):
            _add_field(message, message_name, field_name, number, field_type)
    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file().SerializeToString())

MESSAGES: dict[str, type[Message]] = {
    name: message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.{name}"))
    for name in _SCHEMA
}


def __getattr__(name: str) -> Any:
    try:
        return MESSAGES[name]
    except KeyError:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}") from None


__all__ = [
    "MESSAGES",
    "METHODS",
    "PACKAGE",
    "SERVICE",
    "STREAM_UNARY",
    "UNARY_STREAM",
    "UNARY_UNARY",
    "method_path",
]
