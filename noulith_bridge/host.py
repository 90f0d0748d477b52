"""Blocking adapter for synchronous editor hosts.

Editor extension hooks (``activate`` / ``deactivate``) are usually plain
functions. ``ThreadedBridge`` runs a ``LifecycleController`` on a
background thread with its own asyncio event loop and exposes blocking
wrappers that submit coroutines to that loop.

Notification handlers registered through the adapter run on the
background thread.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Dict, List, Optional

from .config import BridgeConfig
from .controller import LifecycleController
from .errors import SessionStateError
from .session import NotificationHandler

logger = logging.getLogger(__name__)

THREAD_JOIN_TIMEOUT = 5.0


class ThreadedBridge:
    """Runs the bridge on a daemon thread; every method blocks until done."""

    def __init__(self, config: Optional[BridgeConfig] = None):
        self.controller = LifecycleController(config)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    def activate(
        self,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
        watch_patterns: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Start the background loop and the language server.

        Errors from ``LifecycleController.start`` propagate unchanged; the
        background thread is shut down before they do. Calling this while
        already active is a no-op.
        """
        with self._lock:
            if self._active:
                return
            self._ensure_thread()
            try:
                self._submit(self.controller.start(command, args, watch_patterns), timeout)
            except BaseException:
                self._shutdown_thread()
                raise
            self._active = True

    def deactivate(self, timeout: Optional[float] = None) -> None:
        """Stop the language server and the background loop. Idempotent."""
        with self._lock:
            if self._loop is None:
                return
            try:
                if self._active:
                    self._submit(self.controller.stop(), timeout)
            finally:
                self._active = False
                self._shutdown_thread()

    # ------------------------------------------------------------------
    # Traffic
    # ------------------------------------------------------------------

    def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        return self._submit(self.controller.call(method, params, timeout))

    def notify(self, method: str, params: Any = None) -> bool:
        return self._submit(self.controller.notify(method, params))

    def on_notification(self, method: str, handler: Optional[NotificationHandler]) -> None:
        if self._loop is None:
            self.controller.on_notification(method, handler)
            return
        self._loop.call_soon_threadsafe(self.controller.on_notification, method, handler)

    def open_document(self, path: str, text: Optional[str] = None,
                      language_id: Optional[str] = None) -> bool:
        return self._submit(self._documents_call("did_open", path, text, language_id))

    def change_document(self, path: str, text: str) -> bool:
        return self._submit(self._documents_call("did_change", path, text))

    def save_document(self, path: str, text: Optional[str] = None) -> bool:
        return self._submit(self._documents_call("did_save", path, text))

    def close_document(self, path: str) -> bool:
        return self._submit(self._documents_call("did_close", path))

    def update_configuration(self, settings: Any) -> bool:
        return self._submit(self.controller.update_configuration(settings))

    def get_status(self) -> Dict[str, Any]:
        status = self.controller.get_status()
        status["active"] = self._active
        return status

    async def _documents_call(self, name: str, *args: Any) -> bool:
        return await getattr(self.controller.documents, name)(*args)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def _submit(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            raise SessionStateError("submit work", self.controller.state)
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def _ensure_thread(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._ready.clear()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._thread_main, name="noulith-bridge", daemon=True
        )
        self._thread.start()
        self._ready.wait()

    def _thread_main(self) -> None:
        """Background thread running the bridge event loop."""
        loop = self._loop
        asyncio.set_event_loop(loop)
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            leftovers = asyncio.all_tasks(loop)
            for task in leftovers:
                task.cancel()
            if leftovers:
                loop.run_until_complete(asyncio.gather(*leftovers, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    def _shutdown_thread(self) -> None:
        loop, thread = self._loop, self._thread
        self._loop = None
        self._thread = None
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=THREAD_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Bridge thread did not exit within %ss", THREAD_JOIN_TIMEOUT)
