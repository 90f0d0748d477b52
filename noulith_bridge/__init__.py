"""Bridge between an editor and a Language Server Protocol process over stdio."""

from .config import BridgeConfig, load_config
from .controller import LifecycleController, ServerCapabilities
from .errors import (
    BridgeError,
    ConfigValidationError,
    ProtocolViolationError,
    RequestCancelledError,
    RequestTimeoutError,
    ResponseError,
    SessionStateError,
    SpawnFailureError,
    TransportBrokenError,
)
from .host import ThreadedBridge
from .session import Session, SessionState
from .transport import StdioTransport
from .watch_bridge import FileChangeType, WatchBridge

__all__ = [
    'BridgeConfig',
    'BridgeError',
    'ConfigValidationError',
    'FileChangeType',
    'LifecycleController',
    'ProtocolViolationError',
    'RequestCancelledError',
    'RequestTimeoutError',
    'ResponseError',
    'ServerCapabilities',
    'Session',
    'SessionState',
    'SessionStateError',
    'SpawnFailureError',
    'StdioTransport',
    'ThreadedBridge',
    'TransportBrokenError',
    'WatchBridge',
    'load_config',
]
