"""Lifecycle controller: the public entry point of the bridge.

``start()`` spawns the language server, builds the session, performs the
initialize handshake and starts forwarding file changes. ``stop()`` runs
the shutdown handshake, terminates the process and releases the watchers.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import BridgeConfig
from .documents import DocumentSelector, DocumentSync
from .errors import BridgeError, ProtocolViolationError, SessionStateError, SpawnFailureError
from .log_buffer import LOG_ERROR, LOG_INFO, LOG_WARN, InteractionLog, LogEntry
from .path_utils import uri_from_path
from .session import NotificationHandler, Session, SessionState
from .transport import StdioTransport
from .watch_bridge import WatchBridge

logger = logging.getLogger(__name__)

CLIENT_NAME = "noulith-bridge"
CLIENT_VERSION = "0.1.0"

# TextDocumentSyncKind
SYNC_NONE = 0
SYNC_FULL = 1
SYNC_INCREMENTAL = 2


@dataclass
class ServerCapabilities:
    """Capabilities reported by the language server."""
    text_document_sync: int = SYNC_NONE
    semantic_tokens: bool = False
    hover: bool = False
    completion: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, caps: Dict[str, Any]) -> "ServerCapabilities":
        sync = caps.get("textDocumentSync", SYNC_NONE)
        if isinstance(sync, dict):
            sync = sync.get("change", SYNC_NONE)
        return cls(
            text_document_sync=sync if isinstance(sync, int) else SYNC_NONE,
            semantic_tokens=bool(caps.get("semanticTokensProvider")),
            hover=bool(caps.get("hoverProvider")),
            completion=bool(caps.get("completionProvider")),
            raw=dict(caps),
        )


class LifecycleController:
    """Owns one transport, one session and one watch bridge.

    Create one instance per language server; there is no module-level
    client. Usable as an async context manager::

        async with LifecycleController(config) as bridge:
            await bridge.start()
            result = await bridge.call("x/ping", {})
    """

    def __init__(self, config: Optional[BridgeConfig] = None):
        self.config = config or BridgeConfig()
        self.log = InteractionLog(server=self.config.name)
        self._transport: Optional[StdioTransport] = None
        self._session: Optional[Session] = None
        self._watch_bridge: Optional[WatchBridge] = None
        self._documents: Optional[DocumentSync] = None
        self._capabilities: Optional[ServerCapabilities] = None
        self._server_info: Optional[Dict[str, Any]] = None
        self._handlers: Dict[str, Optional[NotificationHandler]] = {}
        self._last_state = SessionState.UNINITIALIZED

    async def __aenter__(self) -> "LifecycleController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        if self._session is None:
            return self._last_state
        return self._session.state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def transport(self) -> Optional[StdioTransport]:
        return self._transport

    @property
    def watch_bridge(self) -> Optional[WatchBridge]:
        return self._watch_bridge

    @property
    def documents(self) -> DocumentSync:
        if self._documents is None:
            raise SessionStateError("sync documents", self.state)
        return self._documents

    @property
    def capabilities(self) -> Optional[ServerCapabilities]:
        return self._capabilities

    @property
    def server_info(self) -> Optional[Dict[str, Any]]:
        return self._server_info

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
        watch_patterns: Optional[List[str]] = None,
    ) -> None:
        """Spawn the server, complete the handshake and start watching files.

        Arguments override the configured values. On any failure every
        component created so far is torn down before the error is raised.

        Raises:
            SessionStateError: If this controller was already started.
            SpawnFailureError: If the process could not be started.
            BridgeError: If the handshake failed.
        """
        if self._session is not None:
            raise SessionStateError("start", self._session.state)

        cfg = self.config
        command = command or cfg.command
        args = list(cfg.args if args is None else args)
        patterns = list(cfg.watch_patterns if watch_patterns is None else watch_patterns)

        self.log.record(LOG_INFO, "Starting language server", f"{command} {' '.join(args)}".strip())
        try:
            env = cfg.process_env()
        except OSError as e:
            self.log.record(LOG_ERROR, "Spawn failed", str(e))
            raise SpawnFailureError(command, str(e)) from e
        transport = StdioTransport(
            command,
            args,
            env=env,
            cwd=cfg.cwd,
            stderr_sink=self.log.server_output,
        )
        try:
            await transport.start()
        except BridgeError as e:
            self.log.record(LOG_ERROR, "Spawn failed", str(e))
            raise

        session = Session(
            transport,
            request_timeout=cfg.request_timeout,
            shutdown_timeout=cfg.shutdown_timeout,
            close_timeout=cfg.terminate_timeout,
            on_protocol_violation=self._on_protocol_violation,
        )
        for method, handler in self._handlers.items():
            session.on_notification(method, handler)
        self._transport = transport
        self._session = session
        self._documents = DocumentSync(
            session,
            DocumentSelector(language_id=cfg.language_id, extensions=cfg.file_extensions),
        )
        self._watch_bridge = WatchBridge(session, cfg.workspace_root, patterns)

        try:
            self._watch_bridge.start()
            result = await session.initialize(self._initialize_params(), timeout=cfg.start_timeout)
        except BaseException as e:
            self.log.record(LOG_ERROR, "Initialization failed", str(e) or type(e).__name__)
            await self._teardown()
            raise

        result = result if isinstance(result, dict) else {}
        self._capabilities = ServerCapabilities.from_dict(result.get("capabilities") or {})
        self._server_info = result.get("serverInfo")
        self.log.record(LOG_INFO, "Connected successfully", f"pid {transport.pid}")

    async def stop(self) -> None:
        """Shut down the session, close the process and release watchers.

        A no-op when the controller was never started or is already stopped.
        """
        if self._session is None:
            return
        self.log.record(LOG_INFO, "Stopping language server")
        await self._teardown()
        self.log.record(LOG_INFO, "Stopped")

    async def _teardown(self) -> None:
        session, self._session = self._session, None
        transport, self._transport = self._transport, None
        watch_bridge, self._watch_bridge = self._watch_bridge, None
        documents, self._documents = self._documents, None

        if session is not None:
            await session.stop()
        if transport is not None:
            await transport.close(self.config.terminate_timeout)
        if watch_bridge is not None:
            watch_bridge.stop()
        if documents is not None:
            documents.reset()
        self._capabilities = None
        self._last_state = SessionState.STOPPED

    def _initialize_params(self) -> Dict[str, Any]:
        root = self.config.workspace_root
        root_uri = uri_from_path(root)
        params: Dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            "rootPath": root,
            "rootUri": root_uri,
            "workspaceFolders": [{"uri": root_uri, "name": os.path.basename(root) or root}],
            "capabilities": {
                "workspace": {
                    "didChangeWatchedFiles": {"dynamicRegistration": False},
                    "didChangeConfiguration": {"dynamicRegistration": False},
                    "workspaceFolders": True,
                },
                "textDocument": {
                    "synchronization": {
                        "dynamicRegistration": False,
                        "didSave": True,
                        "willSave": False,
                        "willSaveWaitUntil": False,
                    },
                    "semanticTokens": {
                        "requests": {"full": True, "range": False},
                        "tokenTypes": [],
                        "tokenModifiers": [],
                        "formats": ["relative"],
                    },
                },
            },
            "trace": "off",
        }
        if self.config.initialization_options is not None:
            params["initializationOptions"] = self.config.initialization_options
        return params

    def _on_protocol_violation(self, error: ProtocolViolationError) -> None:
        self.log.record(LOG_WARN, "Protocol violation", error.reason)

    # ------------------------------------------------------------------
    # Traffic
    # ------------------------------------------------------------------

    def _require_session(self, operation: str) -> Session:
        if self._session is None:
            raise SessionStateError(operation, self.state)
        return self._session

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        return await self._require_session(f"call '{method}'").call(method, params, timeout)

    async def notify(self, method: str, params: Any = None) -> bool:
        if self._session is None:
            return False
        return await self._session.notify(method, params)

    def on_notification(self, method: str, handler: Optional[NotificationHandler]) -> None:
        """Register a notification handler; survives across restarts."""
        self._handlers[method] = handler
        if self._session is not None:
            self._session.on_notification(method, handler)

    async def update_configuration(self, settings: Any) -> bool:
        """Push the settings of the configured section to the server."""
        return await self.notify("workspace/didChangeConfiguration", {
            "settings": {self.config.configuration_section: settings}
        })

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_logs(self, level: Optional[str] = None) -> List[LogEntry]:
        return self.log.entries(level)

    def get_status(self) -> Dict[str, Any]:
        transport = self._transport
        return {
            "name": self.config.name,
            "state": self.state.value,
            "pid": transport.pid if transport else None,
            "pending_requests": self._session.pending_count if self._session else 0,
            "protocol_violations": self._session.protocol_violations if self._session else 0,
            "watch_patterns": self._watch_bridge.patterns if self._watch_bridge else [],
            "open_documents": len(self._documents.open_documents) if self._documents else 0,
        }
