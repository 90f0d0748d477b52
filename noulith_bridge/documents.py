"""Text document synchronisation with the language server.

Forwards editor document lifecycle events (open, change, save, close) as
``textDocument/*`` notifications for documents accepted by the selector.
Changes are sent as full-content updates.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .path_utils import glob_match, to_posix, uri_from_path
from .session import Session

logger = logging.getLogger(__name__)


@dataclass
class DocumentSelector:
    """Which documents the server is interested in."""
    language_id: str
    scheme: str = "file"
    extensions: List[str] = field(default_factory=list)
    pattern: Optional[str] = None

    def matches(self, path: str, language_id: Optional[str] = None, scheme: str = "file") -> bool:
        if scheme != self.scheme:
            return False
        if self.pattern and not glob_match(self.pattern, to_posix(os.path.abspath(path))):
            return False
        if language_id is not None:
            return language_id == self.language_id
        ext = os.path.splitext(path)[1].lower()
        return ext in {e.lower() for e in self.extensions}


class DocumentSync:
    """Tracks open documents and their versions for one session."""

    def __init__(self, session: Session, selector: DocumentSelector):
        self._session = session
        self.selector = selector
        self._open_documents: Dict[str, int] = {}  # uri -> version

    @property
    def open_documents(self) -> Dict[str, int]:
        return dict(self._open_documents)

    def is_open(self, path: str) -> bool:
        return uri_from_path(path) in self._open_documents

    def reset(self) -> None:
        """Forget every open document (used when the session stops)."""
        self._open_documents.clear()

    async def did_open(
        self,
        path: str,
        text: Optional[str] = None,
        language_id: Optional[str] = None,
    ) -> bool:
        """Notify the server that a document is open.

        Reads the file when ``text`` is not given.
        """
        if not self.selector.matches(path, language_id):
            return False
        if text is None:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                text = f.read()

        uri = uri_from_path(path)
        version = self._open_documents.get(uri, 0) + 1
        sent = await self._session.notify("textDocument/didOpen", {
            "textDocument": {
                "uri": uri,
                "languageId": language_id or self.selector.language_id,
                "version": version,
                "text": text,
            }
        })
        if sent:
            self._open_documents[uri] = version
        return sent

    async def did_change(self, path: str, text: str, language_id: Optional[str] = None) -> bool:
        """Send the new full content of a document, opening it if needed."""
        if not self.selector.matches(path, language_id):
            return False
        uri = uri_from_path(path)
        if uri not in self._open_documents:
            return await self.did_open(path, text, language_id)

        version = self._open_documents[uri] + 1
        sent = await self._session.notify("textDocument/didChange", {
            "textDocument": {"uri": uri, "version": version},
            "contentChanges": [{"text": text}],
        })
        if sent:
            self._open_documents[uri] = version
        return sent

    async def did_save(self, path: str, text: Optional[str] = None) -> bool:
        uri = uri_from_path(path)
        if uri not in self._open_documents:
            return False
        params: Dict[str, object] = {"textDocument": {"uri": uri}}
        if text is not None:
            params["text"] = text
        return await self._session.notify("textDocument/didSave", params)

    async def did_close(self, path: str) -> bool:
        uri = uri_from_path(path)
        if self._open_documents.pop(uri, None) is None:
            return False
        return await self._session.notify("textDocument/didClose", {
            "textDocument": {"uri": uri}
        })
