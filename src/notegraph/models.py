"""Pydantic models for the link index."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

ReferenceKind = Literal["link", "embed"]

# The closed set of shapes a typed target can take. Every consumer matches on
# this tag instead of inspecting optional fields ad hoc.
ReferenceForm = Literal["simple", "path", "section", "labeled"]

MatchKind = Literal["path", "name", "name_casefold", "attachment", "none"]


class NoteRecord(BaseModel):
    """A note known to the index."""

    model_config = ConfigDict(frozen=True)

    id: str  # Corpus-relative path without extension, e.g. "x/proj"
    path: str  # Corpus-relative file path, e.g. "x/proj.md"
    mtime: float = 0.0
    content_version: str = ""  # Digest of the content last parsed

    @property
    def basename(self) -> str:
        return self.id.rsplit("/", 1)[-1]

    @property
    def folder(self) -> str:
        return self.id.rsplit("/", 1)[0] if "/" in self.id else ""


class TargetSpec(BaseModel):
    """The target half of a reference: name[#section]."""

    model_config = ConfigDict(frozen=True)

    name: str  # Basename, without folders or extension
    path: str | None = None  # Full path hint when the typed target had a separator
    section: str | None = None
    extension: str | None = None  # Extension as typed, e.g. ".md" or ".png"


class RawReference(BaseModel):
    """A reference token exactly as found in a note."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    kind: ReferenceKind
    target: TargetSpec
    display_label: str | None = None
    line_number: int  # 1-based
    context: str
    start: int  # Offset of "[[" (or "![[") in the note text
    end: int  # Offset just past "]]"
    name_start: int  # Offset of the typed target name
    name_end: int

    @property
    def form(self) -> ReferenceForm:
        if self.display_label is not None:
            return "labeled"
        if self.target.section is not None:
            return "section"
        if self.target.path is not None:
            return "path"
        return "simple"


class ResolvedLink(BaseModel):
    """An edge stored in the index.

    Exactly one of target_id (resolved) or unresolved (normalized placeholder
    name) is set.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str
    target_id: str | None = None
    unresolved: str | None = None
    path_hint: str | None = None  # Folder-qualified name as typed, if any
    section: str | None = None
    kind: ReferenceKind = "link"
    display_label: str | None = None
    line_number: int = 1
    context: str = ""
    start: int = 0
    candidates: tuple[str, ...] = ()  # Only set when resolution was ambiguous

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "ResolvedLink":
        if (self.target_id is None) == (self.unresolved is None):
            raise ValueError("ResolvedLink needs exactly one of target_id or unresolved")
        return self

    @property
    def is_resolved(self) -> bool:
        return self.target_id is not None

    @property
    def is_ambiguous(self) -> bool:
        return len(self.candidates) > 1


class Resolution(BaseModel):
    """Resolver output for one reference."""

    winner: str | None = None
    candidates: list[str] = Field(default_factory=list)
    match: MatchKind = "none"
    placeholder: str | None = None  # Normalized name when unresolved

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1

    @property
    def resolved(self) -> bool:
        return self.winner is not None


class PlaceholderGroup(BaseModel):
    """All unresolved references to one normalized target name."""

    target: str
    refs: list[ResolvedLink] = Field(default_factory=list)


class OrphanReport(BaseModel):
    """Degree-based classification of notes."""

    isolated: list[str] = Field(default_factory=list)
    source_only: list[str] = Field(default_factory=list)
    sink_only: list[str] = Field(default_factory=list)


class IndexStats(BaseModel):
    """Summary counts for a snapshot."""

    version: int
    notes: int
    references: int
    resolved_edges: int
    unresolved_edges: int
    placeholders: int
    ambiguous_edges: int


# ─────────────────────────────────────────────────────────────────────────────
# Deltas
# ─────────────────────────────────────────────────────────────────────────────


class NoteCreated(BaseModel):
    """A note file appeared in the corpus."""

    event: Literal["create"] = "create"
    path: str
    content: str | None = None  # Read from the corpus when omitted


class NoteEdited(BaseModel):
    """A note's content changed."""

    event: Literal["edit"] = "edit"
    path: str
    content: str | None = None


class NoteRenamed(BaseModel):
    """A note was renamed or moved. The file already lives at new_path."""

    event: Literal["rename"] = "rename"
    old_path: str
    new_path: str
    rewrite_links: bool = True


class NoteDeleted(BaseModel):
    """A note file was removed from the corpus."""

    event: Literal["delete"] = "delete"
    path: str


DeltaEvent = Annotated[
    Union[NoteCreated, NoteEdited, NoteRenamed, NoteDeleted],
    Field(discriminator="event"),
]


class RewriteFailure(BaseModel):
    """A referencing note whose link text could not be rewritten."""

    note_id: str
    path: str
    reason: str


class DeltaReport(BaseModel):
    """Outcome of applying one delta."""

    event: Literal["create", "edit", "rename", "delete"]
    note_id: str
    reresolved: list[str] = Field(default_factory=list)  # Other notes whose edges were recomputed
    rewritten: list[str] = Field(default_factory=list)  # Notes whose text was rewritten on rename
    failures: list[RewriteFailure] = Field(default_factory=list)
    promoted: int = 0  # Placeholder edges that became resolved
    demoted: int = 0  # Resolved edges that became placeholders
    recovered: bool = False  # A full rebuild replaced the incremental result
    skipped: bool = False  # Event did not apply (e.g. unknown note, non-note file)

    @property
    def ok(self) -> bool:
        return not self.failures
