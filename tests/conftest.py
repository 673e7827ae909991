"""
Pytest configuration and fixtures for rice-storage tests.
"""

import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import Phase, Verbosity, settings

# Add project root to path so the package imports without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

# -----------------------------------------------------------------------------
# Hypothesis Profiles for Test Performance
# -----------------------------------------------------------------------------
# Usage: HYPOTHESIS_PROFILE=fast pytest tests/
#
# Profiles:
#   fast   - 10 examples, minimal phases (quick iteration)
#   dev    - 50 examples, standard phases (default for local development)
#   ci     - 100 examples, all phases, no deadline (thorough CI testing)
# -----------------------------------------------------------------------------

settings.register_profile(
    "fast",
    max_examples=10,
    phases=[Phase.generate],
    verbosity=Verbosity.quiet,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=50,
    phases=[Phase.generate, Phase.target, Phase.shrink],
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.generate, Phase.target, Phase.shrink, Phase.explain],
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))

from rice_storage import proto  # noqa: E402
from rice_storage.storage_backend import (  # noqa: E402
    BatchInsertResult,
    Document,
    HealthInfo,
    InsertResult,
    TransportKind,
)


def make_transport_mock(kind: TransportKind = TransportKind.HTTP) -> MagicMock:
    """A transport double whose coroutine methods are AsyncMocks."""
    transport = MagicMock()
    transport.kind = kind
    transport.supports.return_value = True
    for name in (
        "connect",
        "disconnect",
        "health",
        "insert",
        "search",
        "delete",
        "delete_run",
        "batch_insert",
        "grant_permission",
        "revoke_permission",
        "check_permission",
    ):
        setattr(transport, name, AsyncMock())
    transport.connect.return_value = True
    transport.health.return_value = HealthInfo(status="ok", version="test")
    transport.insert.return_value = InsertResult(success=True, node_id=123, message="ok")
    transport.search.return_value = []
    transport.batch_insert.side_effect = lambda docs, *args: BatchInsertResult(
        count=len(docs), node_ids=[]
    )
    return transport


@pytest.fixture
def transport_mock() -> MagicMock:
    """Provide a connected-looking HTTP transport double."""
    return make_transport_mock()


@pytest.fixture
def documents() -> list[Document]:
    """Provide 1000 small documents."""
    return [Document(id=i, text=f"doc {i}", metadata={"n": i}) for i in range(1000)]


@pytest.fixture
def grpc_mock() -> MagicMock:
    """Provide a gRPC transport double."""
    return make_transport_mock(TransportKind.GRPC)


@pytest.fixture
def http_mock() -> MagicMock:
    """Provide an HTTP transport double."""
    return make_transport_mock(TransportKind.HTTP)


# -----------------------------------------------------------------------------
# gRPC channel double
# -----------------------------------------------------------------------------


class FakeChannel:
    """
    Stands in for grpc.aio.Channel; handlers are keyed by rpc name.

    Every request and response is passed through the real serializers.
    Unary handlers take the request and return a response. Server-stream
    handlers return an iterable of responses or exceptions. Client-stream
    handlers take an iterator over the incoming requests, consumed lazily.
    """

    def __init__(self) -> None:
        self.handlers: dict[str, Callable[..., Any]] = {
            "Health": lambda request: proto.HealthResponse(status="ok", version="1.0"),
        }
        self.calls: list[tuple[str, Any, Any]] = []
        self.cancelled: list[str] = []
        self.closed = False

    def _record(self, name: str, request: Any, metadata: Any) -> None:
        self.calls.append((name, request, metadata))

    def names(self) -> list[str]:
        return [name for name, _, _ in self.calls]

    def unary_unary(self, path, request_serializer, response_deserializer):
        name = path.rsplit("/", 1)[1]

        async def call(request, metadata=None, timeout=None):
            parsed = type(request).FromString(request_serializer(request))
            self._record(name, parsed, metadata)
            response = self.handlers[name](parsed)
            return response_deserializer(response.SerializeToString())

        return call

    def unary_stream(self, path, request_serializer, response_deserializer):
        name = path.rsplit("/", 1)[1]
        channel = self

        class StreamCall:
            def __init__(self, request, metadata):
                self.request = request
                self.metadata = metadata

            def __aiter__(self):
                return self._iterate()

            async def _iterate(self):
                parsed = type(self.request).FromString(request_serializer(self.request))
                channel._record(name, parsed, self.metadata)
                for item in channel.handlers[name](parsed):
                    if isinstance(item, Exception):
                        raise item
                    yield response_deserializer(item.SerializeToString())

            def cancel(self):
                channel.cancelled.append(name)
                return True

        def call(request, metadata=None, timeout=None):
            return StreamCall(request, metadata)

        return call

    def stream_unary(self, path, request_serializer, response_deserializer):
        name = path.rsplit("/", 1)[1]

        async def call(request_iterator, metadata=None, timeout=None):
            received: list[Any] = []

            def incoming():
                for request in request_iterator:
                    parsed = type(request).FromString(request_serializer(request))
                    received.append(parsed)
                    yield parsed

            try:
                response = self.handlers[name](incoming())
            finally:
                self._record(name, received, metadata)
            return response_deserializer(response.SerializeToString())

        return call

    async def close(self):
        self.closed = True


@pytest.fixture
def channel() -> FakeChannel:
    """Provide a fake gRPC channel."""
    return FakeChannel()


@pytest.fixture
def channel_factory(channel):
    """Channel factory for GrpcTransport that hands out ``channel``."""
    factory_calls: list[tuple[str, list]] = []

    def factory(address, options):
        factory_calls.append((address, options))
        return channel

    factory.calls = factory_calls
    return factory
