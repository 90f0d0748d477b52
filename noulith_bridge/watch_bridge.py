"""Forward workspace file changes to the language server using watchdog.

Architecture
------------
- ``start()`` creates one watchdog ``Observer`` and schedules one handler
  per watch pattern on the workspace root (recursively). Each pattern is a
  ``WatchSubscription`` holding the ``ObservedWatch`` handle.
- Watchdog delivers events on its own thread. Matching file events are
  handed to the event loop with ``call_soon_threadsafe``; nothing touches
  the session from the observer thread.
- On the loop, every event becomes a ``workspace/didChangeWatchedFiles``
  notification, but only while the session is running. Events seen
  earlier are dropped, not queued: each notification is a snapshot of
  "this path changed", so the next event for a path resynchronises the
  server.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .path_utils import glob_match, relative_posix, to_posix, uri_from_path
from .session import Session

logger = logging.getLogger(__name__)

DID_CHANGE_WATCHED_FILES = "workspace/didChangeWatchedFiles"


def pattern_matches(pattern: str, path: str, root: str) -> bool:
    """Match against the path relative to ``root``, then the absolute path."""
    rel = relative_posix(path, root)
    if rel is not None and glob_match(pattern, rel):
        return True
    return glob_match(pattern, to_posix(os.path.abspath(path)))


class FileChangeType(IntEnum):
    """LSP ``FileChangeType`` wire values."""
    CREATED = 1
    CHANGED = 2
    DELETED = 3


@dataclass
class WatchSubscription:
    """A glob pattern plus the callback invoked for matching events."""
    pattern: str
    callback: Callable[[str, FileChangeType], None]
    watch: Any = None  # watchdog ObservedWatch once scheduled
    handler: Optional[FileSystemEventHandler] = None

    def matches(self, path: str, root: str) -> bool:
        return pattern_matches(self.pattern, path, root)


class _EventHandler(FileSystemEventHandler):
    """Watchdog handler feeding one subscription."""

    def __init__(self, subscription: WatchSubscription, root: str):
        super().__init__()
        self._subscription = subscription
        self._root = root

    def _emit(self, path: Any, change_type: FileChangeType) -> None:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if self._subscription.matches(path, self._root):
            self._subscription.callback(path, change_type)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, FileChangeType.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, FileChangeType.CHANGED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, FileChangeType.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, FileChangeType.DELETED)
            self._emit(event.dest_path, FileChangeType.CREATED)


class WatchBridge:
    """Turns filesystem events under ``root`` into change notifications.

    Lifecycle:
        1. ``__init__(session, root, patterns)`` - nothing is watched yet.
        2. ``start()`` - must run on the event loop thread; schedules watchdog.
        3. Events -> loop -> ``Session.notify`` while the session is running.
        4. ``stop()`` - unschedules every subscription and joins the observer.
    """

    def __init__(
        self,
        session: Session,
        root: str,
        patterns: List[str],
        loop: Optional[asyncio.AbstractEventLoop] = None,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self._session = session
        self.root = os.path.abspath(root)
        self.patterns = list(patterns)
        self._loop = loop
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._subscriptions: List[WatchSubscription] = []
        self._tasks: Set[asyncio.Task] = set()
        self.dropped = 0
        self.forwarded = 0

    @property
    def subscriptions(self) -> List[WatchSubscription]:
        return list(self._subscriptions)

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def matches(self, path: str) -> bool:
        """True if ``path`` matches any configured pattern."""
        return any(pattern_matches(p, path, self.root) for p in self.patterns)

    def start(self) -> None:
        """Register every pattern with a watchdog observer.

        Safe to call more than once; later calls are no-ops while watching.
        """
        if self._observer is not None:
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        if not self.patterns:
            logger.debug("No watch patterns configured, file watching disabled")
            return
        if not os.path.isdir(self.root):
            logger.warning("Watch root does not exist: %s", self.root)
            return

        observer = self._observer_factory()
        for pattern in self.patterns:
            subscription = WatchSubscription(pattern=pattern, callback=self._on_fs_event)
            subscription.handler = _EventHandler(subscription, self.root)
            subscription.watch = observer.schedule(subscription.handler, self.root, recursive=True)
            self._subscriptions.append(subscription)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s for %s", self.root, ", ".join(self.patterns))

    def stop(self) -> None:
        """Release all subscriptions and stop the observer."""
        observer, self._observer = self._observer, None
        subscriptions, self._subscriptions = self._subscriptions, []
        for task in list(self._tasks):
            task.cancel()
        if observer is None:
            return
        for subscription in subscriptions:
            try:
                observer.remove_handler_for_watch(subscription.handler, subscription.watch)
            except (KeyError, ValueError):
                logger.debug("Subscription %s already removed", subscription.pattern)
        observer.stop()
        observer.join(timeout=2)
        logger.info("Stopped watching %s", self.root)

    def _on_fs_event(self, path: str, change_type: FileChangeType) -> None:
        """Observer-thread side: hop onto the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule, path, change_type)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.debug("Event loop gone, dropping change for %s", path)

    def _schedule(self, path: str, change_type: FileChangeType) -> None:
        if not self._session.is_running:
            self.dropped += 1
            logger.debug("Session not running, dropping %s for %s", change_type.name, path)
            return
        task = asyncio.ensure_future(self.handle_event(path, change_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_event(self, path: str, change_type: FileChangeType) -> bool:
        """Send one change notification for ``path``.

        Returns:
            True if the notification was written, False if it was dropped.
        """
        if not self.matches(path):
            return False
        if not self._session.is_running:
            self.dropped += 1
            return False
        params = {"changes": [{"uri": uri_from_path(path), "type": int(change_type)}]}
        sent = await self._session.notify(DID_CHANGE_WATCHED_FILES, params)
        if sent:
            self.forwarded += 1
        else:
            self.dropped += 1
        return sent
