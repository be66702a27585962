"""
Editor/workspace collaborator.

The engine never watches the filesystem itself. A host (editor plugin, MCP
client, CLI) reports the active document and open documents, and forwards
file created/changed/deleted events to the engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol

from context_weave.indexing.files import SKIP_DIRS, language_for

LOG = logging.getLogger("workspace")


@dataclass
class Document:
    """An editor buffer as reported by the host."""

    path: str
    text: str
    language: str = "plaintext"
    selection: tuple[int, int] | None = None  # inclusive 0-based line range

    @property
    def line_count(self) -> int:
        return len(self.text.split("\n"))

    def selected_text(self) -> str:
        if self.selection is None:
            return self.text
        start, end = self.selection
        return "\n".join(self.text.split("\n")[start : end + 1])


class Workspace(Protocol):
    @property
    def root(self) -> Path: ...

    def active_document(self) -> Document | None: ...

    def open_documents(self) -> list[Document]: ...

    def read_bytes(self, path: str) -> bytes: ...

    def iter_files(self) -> Iterator[Path]: ...


class LocalWorkspace:
    """Filesystem-backed workspace whose editor state is pushed in by the host."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()
        self._active: Document | None = None
        self._open: dict[str, Document] = {}

    @property
    def root(self) -> Path:
        return self._root

    def set_active_document(self, document: Document | None) -> None:
        self._active = document
        if document is not None:
            self._open[document.path] = document

    def open_document(self, path: str, text: str | None = None) -> Document:
        """Register an open buffer, reading it from disk when *text* is None."""
        if text is None:
            text = self.read_bytes(path).decode("utf-8", errors="replace")
        doc = Document(path=path, text=text, language=language_for(path))
        self._open[path] = doc
        return doc

    def close_document(self, path: str) -> None:
        self._open.pop(path, None)
        if self._active is not None and self._active.path == path:
            self._active = None

    def active_document(self) -> Document | None:
        return self._active

    def open_documents(self) -> list[Document]:
        """Open buffers, active document first."""
        docs = list(self._open.values())
        if self._active is not None:
            docs.sort(key=lambda d: d.path != self._active.path)
        return docs

    def read_bytes(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def iter_files(self) -> Iterator[Path]:
        for path in self._root.rglob("*"):
            if any(part in SKIP_DIRS for part in path.relative_to(self._root).parts):
                continue
            if path.is_file():
                yield path
