"""
Error taxonomy for the RiceDB storage client.

Callers need to tell apart four situations because each one is recovered
differently:

- TransportConnectionError: the server could not be reached at connect time
- UnsupportedOperationError: the active transport cannot perform the call
  (switch transport)
- ValidationError: the input was rejected locally (fix the input)
- RemoteError: the server answered with a failure (surface it)
"""

from __future__ import annotations


class RiceStorageError(Exception):
    """Base class for every error raised by rice_storage."""

    pass


class TransportConnectionError(RiceStorageError, ConnectionError):
    """Raised when a transport cannot reach the server."""

    def __init__(self, transport: str, address: str, reason: str = "") -> None:
        self.transport = transport
        self.address = address
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"{transport} transport could not connect to {address}{detail}")


class NotConnectedError(RiceStorageError, RuntimeError):
    """Raised when an operation is attempted before connect()."""

    def __init__(self, message: str = "Not connected") -> None:
        super().__init__(message)


class UnsupportedOperationError(RiceStorageError, NotImplementedError):
    """Raised, before any network I/O, for operations a transport lacks."""

    def __init__(self, operation: str, transport: str, hint: str = "") -> None:
        self.operation = operation
        self.transport = transport
        message = f"{operation} is not supported via {transport} transport"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class ValidationError(RiceStorageError, ValueError):
    """Raised when an argument is rejected before it reaches a transport."""

    pass


class RemoteError(RiceStorageError):
    """
    Raised when the remote service reports a failure.

    Attributes:
        status: HTTP status code or gRPC status name, when known
        message: Message or body returned by the service
    """

    def __init__(self, message: str, status: int | str | None = None) -> None:
        self.status = status
        self.message = message
        prefix = f"Request failed with status {status}" if status is not None else "Request failed"
        super().__init__(f"{prefix}: {message}")


__all__ = [
    "NotConnectedError",
    "RemoteError",
    "RiceStorageError",
    "TransportConnectionError",
    "UnsupportedOperationError",
    "ValidationError",
]
