"""Corpus providers: where note paths and contents come from.

The index only ever sees corpus-relative posix paths ("x/proj.md"). A
provider maps those to real storage.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import NamedTuple, Protocol

from .config import DEFAULT_NOTE_EXTENSIONS

log = logging.getLogger(__name__)


class NoteDocument(NamedTuple):
    """One note as read from the corpus."""

    path: str  # Corpus-relative posix path with extension
    content: str
    mtime: float = 0.0


class CorpusProvider(Protocol):
    """What the index needs from note storage."""

    def iter_documents(self) -> Iterator[NoteDocument]: ...

    def read(self, path: str) -> NoteDocument: ...

    def write_text(self, path: str, text: str) -> None: ...

    def exists(self, path: str) -> bool: ...

    def stat_mtime(self, path: str) -> float: ...

    def is_note_path(self, path: str) -> bool: ...


class FileSystemCorpus:
    """Notes stored as files under a root directory.

    Hidden files and directories (leading ".") are not part of the corpus,
    which keeps template and archive folders out of the index.
    """

    def __init__(self, root: Path | str, extensions: Iterable[str] = DEFAULT_NOTE_EXTENSIONS):
        self.root = Path(root)
        self.extensions = tuple(e.lower() for e in extensions)

    def relative(self, file_path: Path | str) -> str:
        """Corpus-relative posix path for a file under the root."""
        return Path(file_path).resolve().relative_to(self.root.resolve()).as_posix()

    def absolute(self, path: str) -> Path:
        return self.root / Path(path)

    def is_note_path(self, path: str) -> bool:
        parts = Path(path).parts
        if not parts or any(part.startswith(".") for part in parts):
            return False
        return Path(path).suffix.lower() in self.extensions

    def iter_paths(self) -> Iterator[str]:
        if not self.root.exists():
            return
        for file_path in sorted(self.root.rglob("*")):
            if not file_path.is_file():
                continue
            rel = file_path.relative_to(self.root).as_posix()
            if self.is_note_path(rel):
                yield rel

    def iter_documents(self) -> Iterator[NoteDocument]:
        """Yield every readable note. Unreadable files are skipped with a warning."""
        for rel in self.iter_paths():
            try:
                yield self.read(rel)
            except (OSError, UnicodeDecodeError) as e:
                log.warning("Skipping unreadable note %s: %s", rel, e)

    def read(self, path: str) -> NoteDocument:
        file_path = self.absolute(path)
        content = file_path.read_text(encoding="utf-8")
        return NoteDocument(path=path, content=content, mtime=file_path.stat().st_mtime)

    def exists(self, path: str) -> bool:
        return self.absolute(path).is_file()

    def stat_mtime(self, path: str) -> float:
        try:
            return self.absolute(path).stat().st_mtime
        except OSError:
            return 0.0

    def write_text(self, path: str, text: str) -> None:
        """Write a note atomically: temp file in the same folder, then replace."""
        target = self.absolute(path)
        # Hidden prefix keeps the temp file out of the corpus and the watcher
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=target.parent,
            delete=False,
            prefix=f".{target.name}.",
            suffix=".tmp",
            encoding="utf-8",
            newline="",
        ) as f:
            temp_path = Path(f.name)
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        try:
            temp_path.replace(target)
        finally:
            if temp_path.exists():
                temp_path.unlink()
