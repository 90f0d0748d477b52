"""JSON-RPC message types carried over the language server channel."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .errors import ProtocolViolationError

JSONRPC_VERSION = "2.0"

# JSON-RPC / LSP error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
REQUEST_CANCELLED = -32800

RequestId = Union[int, str]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_request_id(value: Any) -> bool:
    return _is_int(value) or isinstance(value, str)


@dataclass
class Request:
    """A request expecting a correlated response."""
    id: RequestId
    method: str
    params: Any = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            d["params"] = self.params
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Request":
        return cls(id=d["id"], method=d["method"], params=d.get("params"))


@dataclass
class ResponseErrorPayload:
    """The ``error`` member of an error response."""
    code: int
    message: str
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            d["data"] = self.data
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ResponseErrorPayload":
        """Build from an ``error`` object.

        Raises:
            ProtocolViolationError: If ``code`` is not an integer.
        """
        code = d.get("code")
        if not _is_int(code):
            raise ProtocolViolationError(f"error code must be an integer, got {code!r}")
        return cls(
            code=code,
            message=str(d.get("message", "Unknown error")),
            data=d.get("data"),
        )


@dataclass
class Response:
    """A response to an earlier request, carrying either a result or an error."""
    id: Optional[RequestId]
    result: Any = None
    error: Optional[ResponseErrorPayload] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            d["error"] = self.error.to_dict()
        else:
            d["result"] = self.result
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Response":
        error = d.get("error")
        return cls(
            id=d.get("id"),
            result=d.get("result"),
            error=ResponseErrorPayload.from_dict(error) if isinstance(error, dict) else None,
        )


@dataclass
class Notification:
    """A one-way message; never answered."""
    method: str
    params: Any = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            d["params"] = self.params
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Notification":
        return cls(method=d["method"], params=d.get("params"))


Message = Union[Request, Response, Notification]


def parse_message(d: Any) -> Message:
    """Classify a decoded JSON-RPC object.

    Raises:
        ProtocolViolationError: If the object is not a request, response
            or notification.
    """
    if not isinstance(d, dict):
        raise ProtocolViolationError(f"expected a JSON object, got {type(d).__name__}")

    has_id = "id" in d
    method = d.get("method")

    if method is not None:
        if not isinstance(method, str):
            raise ProtocolViolationError("'method' must be a string")
        if has_id:
            if not _is_request_id(d["id"]):
                raise ProtocolViolationError(f"invalid request id: {d['id']!r}")
            return Request.from_dict(d)
        return Notification.from_dict(d)

    if has_id:
        if "result" not in d and "error" not in d:
            raise ProtocolViolationError("response carries neither 'result' nor 'error'")
        if d["id"] is not None and not _is_request_id(d["id"]):
            raise ProtocolViolationError(f"invalid response id: {d['id']!r}")
        if "error" in d and not isinstance(d["error"], dict):
            raise ProtocolViolationError("'error' must be an object")
        return Response.from_dict(d)

    raise ProtocolViolationError("message has neither 'method' nor 'id'")


def encode_message(message: Message) -> bytes:
    """Serialize a message to a UTF-8 JSON payload."""
    return json.dumps(message.to_dict(), separators=(",", ":")).encode("utf-8")


def decode_message(payload: bytes) -> Message:
    """Parse a UTF-8 JSON payload into a message.

    Raises:
        ProtocolViolationError: If the payload is not valid JSON-RPC.
    """
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolViolationError(f"undecodable payload: {e}", raw=payload) from e
    try:
        return parse_message(data)
    except ProtocolViolationError as e:
        e.raw = payload
        raise
