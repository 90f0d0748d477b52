"""Bounded in-memory log of bridge interactions.

Entries are mirrored to the standard ``logging`` hierarchy so hosts that
configure logging see the same events; the buffer lets a host show recent
activity (connects, server stderr, protocol problems) without scraping log
files.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, List, Optional

logger = logging.getLogger(__name__)

# Log levels
LOG_INFO = 'INFO'
LOG_DEBUG = 'DEBUG'
LOG_ERROR = 'ERROR'
LOG_WARN = 'WARN'

MAX_LOG_ENTRIES = 500

_LEVEL_MAP = {
    LOG_DEBUG: logging.DEBUG,
    LOG_INFO: logging.INFO,
    LOG_WARN: logging.WARNING,
    LOG_ERROR: logging.ERROR,
}


@dataclass
class LogEntry:
    """A single log entry for language server interactions."""
    timestamp: datetime
    level: str
    server: Optional[str]
    event: str
    details: Optional[str] = None

    def format(self, include_timestamp: bool = True) -> str:
        parts = []
        if include_timestamp:
            parts.append(self.timestamp.strftime('%H:%M:%S.%f')[:-3])
        parts.append(f"[{self.level}]")
        if self.server:
            parts.append(f"[{self.server}]")
        parts.append(self.event)
        if self.details:
            parts.append(f"- {self.details}")
        return ' '.join(parts)


class InteractionLog:
    """Thread-safe ring buffer of ``LogEntry`` objects."""

    def __init__(self, server: Optional[str] = None, maxlen: int = MAX_LOG_ENTRIES):
        self._server = server
        self._entries: Deque[LogEntry] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def record(self, level: str, event: str, details: Optional[str] = None) -> None:
        entry = LogEntry(
            timestamp=datetime.now(),
            level=level,
            server=self._server,
            event=event,
            details=details,
        )
        with self._lock:
            self._entries.append(entry)
        if details:
            logger.log(_LEVEL_MAP.get(level, logging.INFO), "[%s] %s - %s", self._server, event, details)
        else:
            logger.log(_LEVEL_MAP.get(level, logging.INFO), "[%s] %s", self._server, event)

    def server_output(self, line: str) -> None:
        """Sink for the language server's stderr lines."""
        self.record(LOG_DEBUG, "Server output", line)

    def entries(self, level: Optional[str] = None) -> List[LogEntry]:
        with self._lock:
            entries = list(self._entries)
        if level:
            entries = [e for e in entries if e.level == level]
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
