"""Exception types raised by notegraph."""

from __future__ import annotations


class NotegraphError(Exception):
    """Base class for notegraph errors."""


class NoteNotFoundError(NotegraphError):
    """Raised when a note id is not present in the index."""

    def __init__(self, note_id: str) -> None:
        self.note_id = note_id
        super().__init__(f"Note not found: {note_id}")


class IndexInvariantViolation(NotegraphError):
    """Raised when the backlink index is internally inconsistent.

    This always indicates a defect in the updater. The store recovers by
    discarding the working copy and rebuilding from the corpus.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        preview = "; ".join(self.problems[:5])
        more = f" (+{len(self.problems) - 5} more)" if len(self.problems) > 5 else ""
        super().__init__(f"Index invariant violated: {preview}{more}")
