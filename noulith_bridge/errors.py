"""Custom exceptions for the language server bridge.

Every failure the bridge surfaces derives from ``BridgeError`` so callers
can catch the whole family at the host boundary.
"""

from typing import Any, List, Optional


class BridgeError(Exception):
    """Base exception for bridge errors."""

    pass


class SpawnFailureError(BridgeError):
    """Raised when the language server process cannot be started."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start language server '{command}': {reason}")


class TransportBrokenError(BridgeError):
    """Raised when the channel to the process is lost after a successful spawn."""

    def __init__(self, reason: str = "Connection to language server lost"):
        self.reason = reason
        super().__init__(reason)


class ProtocolViolationError(BridgeError):
    """Raised for malformed frames or messages that break the protocol.

    The offending frame is discarded; the reader keeps going.
    """

    def __init__(self, reason: str, raw: Optional[bytes] = None):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Protocol violation: {reason}")


class RequestTimeoutError(BridgeError, TimeoutError):
    """Raised when a single request receives no response in time."""

    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"LSP request {method} timed out after {timeout:g}s")


class RequestCancelledError(BridgeError):
    """Raised for requests still pending when the session shuts down."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"LSP request {method} was cancelled by session shutdown")


class ResponseError(BridgeError):
    """Raised when the server answers a request with an error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"Server error {code}: {message}")


class SessionStateError(BridgeError):
    """Raised when an operation is not valid in the session's current state."""

    def __init__(self, operation: str, state: Any):
        self.operation = operation
        self.state = state
        state_name = getattr(state, "value", state)
        super().__init__(f"Cannot {operation} while session is {state_name}")


class ConfigValidationError(BridgeError):
    """Raised when configuration validation fails."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")
