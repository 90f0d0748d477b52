"""Protocol session: handshake, request routing and notification dispatch.

The session sits on top of a ``StdioTransport``. A single reader task
drains ``transport.receive()`` and dispatches every frame in arrival order;
callers of ``call()`` wait on their own future and never block the reader.

State machine::

    UNINITIALIZED --initialize()--> INITIALIZING --response--> RUNNING
    RUNNING --stop()--> (shutdown request, exit notification) SHUTTING_DOWN
    SHUTTING_DOWN --transport closed--> STOPPED
    any state --channel broken--> SHUTTING_DOWN --> STOPPED

All session state (request ids, the pending map, the handler registry) is
owned by the event loop thread. Other threads must enter through
``loop.call_soon_threadsafe`` or ``asyncio.run_coroutine_threadsafe``.
"""

import asyncio
import inspect
import logging
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .errors import (
    BridgeError,
    ProtocolViolationError,
    RequestCancelledError,
    RequestTimeoutError,
    ResponseError,
    SessionStateError,
    TransportBrokenError,
)
from .messages import (
    METHOD_NOT_FOUND,
    Message,
    Notification,
    Request,
    RequestId,
    Response,
    ResponseErrorPayload,
    decode_message,
    encode_message,
)
from .transport import StdioTransport

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_CLOSE_TIMEOUT = 5.0

# Abandoned ids remembered for late responses; the oldest are forgotten first
MAX_ABANDONED_IDS = 1024

NotificationHandler = Callable[[Any], Union[None, Awaitable[None]]]


class SessionState(Enum):
    """Lifecycle states of a protocol session."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# window/logMessage and window/showMessage MessageType -> logging level
_MESSAGE_TYPE_LEVELS = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}


def _log_server_message(params: Any) -> None:
    if not isinstance(params, dict):
        return
    level = _MESSAGE_TYPE_LEVELS.get(params.get("type"), logging.INFO)
    logger.log(level, "Server: %s", params.get("message", ""))


class Session:
    """JSON-RPC session over a stdio transport."""

    def __init__(
        self,
        transport: StdioTransport,
        request_timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
        on_protocol_violation: Optional[Callable[[ProtocolViolationError], None]] = None,
    ):
        self._transport = transport
        self.request_timeout = request_timeout
        self.shutdown_timeout = shutdown_timeout
        self.close_timeout = close_timeout
        self._on_protocol_violation = on_protocol_violation

        self._state = SessionState.UNINITIALIZED
        self._next_id = 0
        self._pending: Dict[RequestId, Tuple[str, asyncio.Future]] = {}
        # Ids given up on (timeout, caller cancelled, bulk cancel); a late
        # response for one of these is expected, not a violation.
        self._abandoned: "OrderedDict[RequestId, None]" = OrderedDict()
        self._handlers: Dict[str, NotificationHandler] = {
            "window/logMessage": _log_server_message,
            "window/showMessage": _log_server_message,
        }
        self._buffered: List[Message] = []
        self._initialize_id: Optional[RequestId] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._finish_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self.protocol_violations = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING and not self._stopping

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def transport(self) -> StdioTransport:
        return self._transport

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("Session state %s -> %s", self._state.value, state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def initialize(self, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """Start the reader and perform the initialize handshake.

        Returns:
            The ``initialize`` result sent by the server.

        Raises:
            SessionStateError: If the session was already started.
            BridgeError: If the handshake fails; the session is then STOPPED.
        """
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError("initialize", self._state)

        self._set_state(SessionState.INITIALIZING)
        self._reader_task = asyncio.create_task(self._reader_loop())
        try:
            result = await self.call("initialize", params, timeout=timeout)
        except BaseException:
            self._stopping = True
            self._fail_pending(RequestCancelledError)
            await self._finish()
            raise

        if self._state is not SessionState.RUNNING:
            raise TransportBrokenError("session stopped during initialization")
        return result

    async def call(
        self,
        method: str,
        params: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for its response.

        Args:
            method: Request method name.
            params: Request params.
            timeout: Seconds to wait; defaults to ``request_timeout``.

        Raises:
            SessionStateError: If the session cannot accept requests.
            RequestTimeoutError: If no response arrived in time.
            ResponseError: If the server answered with an error.
            RequestCancelledError: If the session shut down first.
            TransportBrokenError: If the channel was lost.
        """
        if self._stopping or not self._accepts_call(method):
            raise SessionStateError(f"call '{method}'", self._state)
        return await self._request(method, params, timeout)

    async def notify(self, method: str, params: Any = None) -> bool:
        """Send a notification if the session is running.

        Returns:
            True if the notification was written, False if it was dropped.
        """
        if not self.is_running:
            logger.debug("Dropping notification %s: session is %s", method, self._state.value)
            return False
        try:
            await self._send(Notification(method, params))
        except TransportBrokenError as e:
            logger.warning("Notification %s not delivered: %s", method, e)
            await self._handle_broken(e.reason)
            return False
        return True

    def on_notification(self, method: str, handler: Optional[NotificationHandler]) -> None:
        """Register the handler for a notification method, replacing any other.

        Passing ``None`` removes the handler.
        """
        if handler is None:
            self._handlers.pop(method, None)
        else:
            self._handlers[method] = handler

    async def stop(self) -> None:
        """Shut the session down gracefully and close the transport.

        Pending requests are cancelled straight away. When RUNNING, a
        ``shutdown`` request is sent (bounded by ``shutdown_timeout``) and
        followed by the ``exit`` notification. Safe to call repeatedly.
        """
        if self._state is SessionState.STOPPED:
            return
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        self._fail_pending(RequestCancelledError)

        if self._state is SessionState.RUNNING:
            try:
                await self._request("shutdown", None, self.shutdown_timeout)
            except BridgeError as e:
                logger.warning("Shutdown request failed: %s", e)
            try:
                await self._send(Notification("exit"))
            except TransportBrokenError as e:
                logger.debug("Exit notification not delivered: %s", e)

        await self._finish()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _accepts_call(self, method: str) -> bool:
        if self._state is SessionState.RUNNING:
            return True
        return (
            self._state is SessionState.INITIALIZING
            and method == "initialize"
            and self._initialize_id is None
        )

    async def _request(self, method: str, params: Any, timeout: Optional[float]) -> Any:
        self._next_id += 1
        req_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = (method, future)
        if method == "initialize":
            self._initialize_id = req_id

        try:
            await self._send(Request(req_id, method, params))
        except TransportBrokenError as e:
            self._pending.pop(req_id, None)
            await self._handle_broken(e.reason)
            raise

        if timeout is None:
            timeout = self.request_timeout
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            self._abandon(req_id)
            logger.warning("Request %s (id %s) timed out after %ss", method, req_id, timeout)
            if self.is_running:
                await self.notify("$/cancelRequest", {"id": req_id})
            raise RequestTimeoutError(method, timeout) from None
        except asyncio.CancelledError:
            self._abandon(req_id)
            raise

    def _abandon(self, req_id: RequestId) -> None:
        if self._pending.pop(req_id, None) is not None:
            self._remember_abandoned(req_id)

    def _remember_abandoned(self, req_id: RequestId) -> None:
        self._abandoned[req_id] = None
        while len(self._abandoned) > MAX_ABANDONED_IDS:
            self._abandoned.popitem(last=False)

    def _fail_pending(self, make_error: Callable[[str], BaseException]) -> None:
        pending, self._pending = self._pending, {}
        for req_id, (method, future) in pending.items():
            self._remember_abandoned(req_id)
            if not future.done():
                future.set_exception(make_error(method))

    async def _send(self, message: Message) -> None:
        logger.debug("--> %s", message)
        await self._transport.send(encode_message(message))

    # ------------------------------------------------------------------
    # Reader loop
    # ------------------------------------------------------------------

    async def _reader_loop(self) -> None:
        reason = "language server closed its output stream"
        try:
            while True:
                try:
                    async for payload in self._transport.receive():
                        await self._dispatch_payload(payload)
                    break
                except ProtocolViolationError as e:
                    self._report_violation(e)
        except TransportBrokenError as e:
            reason = e.reason

        if self._stopping or self._state in (SessionState.SHUTTING_DOWN, SessionState.STOPPED):
            # Expected during a graceful stop; unblock a pending shutdown.
            self._fail_pending(lambda method: TransportBrokenError(reason))
            return
        await self._handle_broken(reason)

    async def _dispatch_payload(self, payload: bytes) -> None:
        try:
            message = decode_message(payload)
        except ProtocolViolationError as e:
            self._report_violation(e)
            return

        logger.debug("<-- %s", message)
        if self._state is SessionState.INITIALIZING and not (
            isinstance(message, Response) and message.id == self._initialize_id
        ):
            self._buffered.append(message)
            return
        try:
            await self._dispatch_message(message)
        except Exception as e:
            logger.exception("Dispatching %s failed", message)
            self._report_violation(
                ProtocolViolationError(f"could not dispatch message: {e}", raw=payload)
            )

    async def _dispatch_message(self, message: Message) -> None:
        if isinstance(message, Response):
            await self._handle_response(message)
        elif isinstance(message, Notification):
            await self._handle_notification(message)
        else:
            await self._handle_server_request(message)

    async def _handle_response(self, response: Response) -> None:
        entry = self._pending.pop(response.id, None)
        if entry is None:
            if response.id in self._abandoned:
                del self._abandoned[response.id]
                logger.debug("Ignoring late response for abandoned request %s", response.id)
                return
            self._report_violation(
                ProtocolViolationError(f"response for unknown request id {response.id!r}")
            )
            return

        method, future = entry
        if (
            response.id == self._initialize_id
            and self._state is SessionState.INITIALIZING
            and not response.is_error
        ):
            await self._enter_running()

        if future.done():
            return
        if response.error is not None:
            future.set_exception(
                ResponseError(response.error.code, response.error.message, response.error.data)
            )
        else:
            future.set_result(response.result)

        if self._state is SessionState.RUNNING and self._buffered:
            buffered, self._buffered = self._buffered, []
            for message in buffered:
                await self._dispatch_message(message)

    async def _enter_running(self) -> None:
        self._set_state(SessionState.RUNNING)
        try:
            await self._send(Notification("initialized", {}))
        except TransportBrokenError as e:
            await self._handle_broken(e.reason)

    async def _handle_notification(self, notification: Notification) -> None:
        handler = self._handlers.get(notification.method)
        if handler is None:
            logger.debug("No handler for notification %s", notification.method)
            return
        try:
            result = handler(notification.params)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Handler for %s failed", notification.method)

    async def _handle_server_request(self, request: Request) -> None:
        self._report_violation(
            ProtocolViolationError(f"unsupported server request: {request.method}")
        )
        reply = Response(
            request.id,
            error=ResponseErrorPayload(METHOD_NOT_FOUND, f"Unhandled method {request.method}"),
        )
        try:
            await self._send(reply)
        except TransportBrokenError as e:
            logger.debug("Could not reject server request %s: %s", request.method, e)

    def _report_violation(self, error: ProtocolViolationError) -> None:
        self.protocol_violations += 1
        logger.warning("%s", error)
        if self._on_protocol_violation is not None:
            try:
                self._on_protocol_violation(error)
            except Exception:
                logger.exception("Protocol violation callback failed")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _handle_broken(self, reason: str) -> None:
        """Skip the handshake: fail pending calls, close, reach STOPPED."""
        if self._state in (SessionState.SHUTTING_DOWN, SessionState.STOPPED):
            return
        logger.error("Language server channel broken: %s", reason)
        self._set_state(SessionState.SHUTTING_DOWN)
        self._fail_pending(lambda method: TransportBrokenError(reason))
        try:
            await self._send(Notification("exit"))
        except BridgeError as e:
            logger.debug("Best-effort exit notification failed: %s", e)
        await self._finish()

    async def _finish(self) -> None:
        async with self._finish_lock:
            if self._state is SessionState.STOPPED:
                return
            self._set_state(SessionState.SHUTTING_DOWN)
            await self._transport.close(self.close_timeout)

            reader = self._reader_task
            if reader is not None and reader is not asyncio.current_task() and not reader.done():
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass

            self._fail_pending(RequestCancelledError)
            self._buffered.clear()
            self._abandoned.clear()
            self._set_state(SessionState.STOPPED)
            self._stopped.set()
