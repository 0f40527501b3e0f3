"""Bidirectional backlink index and full build.

The index is a set of maps keyed by NoteId strings:

    outgoing      source id -> resolved edges leaving the note
    incoming      target id -> resolved edges entering the note
    dangling      source id -> unresolved edges leaving the note
    placeholders  normalized name -> unresolved edges naming it
    references    source id -> references from the note's latest parse
    basenames     normalized basename -> ids sharing it
    dependents    normalized basename -> ids whose references name it

Every value is a frozenset or tuple, so cloning a state is a shallow copy of
the dicts and a published state can be shared with readers while the writer
works on its clone.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .config import (
    DEFAULT_ATTACHMENT_EXTENSIONS,
    DEFAULT_CONTEXT_RADIUS,
    DEFAULT_NOTE_EXTENSIONS,
    NotegraphConfig,
)
from .corpus import NoteDocument
from .errors import IndexInvariantViolation
from .models import NoteRecord, RawReference, ResolvedLink
from .parser.links import basename_of, normalize_name, note_id_for_path, parse_references
from .resolver import Resolver, TieBreakPolicy

log = logging.getLogger(__name__)

_EMPTY: frozenset = frozenset()


def content_digest(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()[:12]


@dataclass(frozen=True)
class IndexSettings:
    """Parsing and resolution settings shared by the builder and the updater."""

    policy: TieBreakPolicy = field(default_factory=TieBreakPolicy)
    note_extensions: tuple[str, ...] = DEFAULT_NOTE_EXTENSIONS
    attachment_extensions: tuple[str, ...] = DEFAULT_ATTACHMENT_EXTENSIONS
    context_radius: int = DEFAULT_CONTEXT_RADIUS

    @classmethod
    def from_config(cls, config: NotegraphConfig, policy: TieBreakPolicy | None = None) -> "IndexSettings":
        return cls(
            policy=policy or TieBreakPolicy(config.tie_break),
            note_extensions=tuple(config.extensions),
            attachment_extensions=tuple(config.attachment_extensions),
            context_radius=config.context_radius,
        )

    @property
    def known_extensions(self) -> tuple[str, ...]:
        return self.note_extensions + self.attachment_extensions

    def parse(self, content: str, source_id: str) -> tuple[RawReference, ...]:
        return tuple(
            parse_references(
                content,
                source_id,
                context_radius=self.context_radius,
                known_extensions=self.known_extensions,
            )
        )

    def extension_rank(self, path: str) -> int:
        lowered = path.lower()
        for rank, ext in enumerate(self.note_extensions):
            if lowered.endswith(ext):
                return rank
        return len(self.note_extensions)


def _insert(mapping: dict, key: str, items: Iterable) -> None:
    items = frozenset(items)
    if items:
        mapping[key] = mapping.get(key, _EMPTY) | items


def _discard(mapping: dict, key: str, items: Iterable) -> None:
    current = mapping.get(key)
    if current is None:
        return
    remaining = current - frozenset(items)
    if remaining:
        mapping[key] = remaining
    else:
        del mapping[key]


@dataclass
class IndexState:
    """Mutable index maps. Only the writer touches an unpublished state."""

    notes: dict[str, NoteRecord] = field(default_factory=dict)
    references: dict[str, tuple[RawReference, ...]] = field(default_factory=dict)
    outgoing: dict[str, frozenset[ResolvedLink]] = field(default_factory=dict)
    incoming: dict[str, frozenset[ResolvedLink]] = field(default_factory=dict)
    dangling: dict[str, frozenset[ResolvedLink]] = field(default_factory=dict)
    placeholders: dict[str, frozenset[ResolvedLink]] = field(default_factory=dict)
    basenames: dict[str, frozenset[str]] = field(default_factory=dict)
    dependents: dict[str, frozenset[str]] = field(default_factory=dict)

    def clone(self) -> "IndexState":
        return IndexState(
            notes=dict(self.notes),
            references=dict(self.references),
            outgoing=dict(self.outgoing),
            incoming=dict(self.incoming),
            dangling=dict(self.dangling),
            placeholders=dict(self.placeholders),
            basenames=dict(self.basenames),
            dependents=dict(self.dependents),
        )

    def resolver(self, settings: IndexSettings) -> Resolver:
        return Resolver(
            self.notes,
            self.basenames,
            policy=settings.policy,
            attachment_extensions=settings.attachment_extensions,
        )

    # ── notes ────────────────────────────────────────────────────────────

    def add_note(self, record: NoteRecord) -> None:
        self.notes[record.id] = record
        _insert(self.basenames, normalize_name(record.basename), (record.id,))

    def remove_note(self, note_id: str) -> None:
        """Forget a note. Its edges must already have been cleared."""
        record = self.notes.pop(note_id, None)
        if record is not None:
            _discard(self.basenames, normalize_name(record.basename), (note_id,))
        self.set_references(note_id, ())
        self.references.pop(note_id, None)

    def set_references(self, note_id: str, references: tuple[RawReference, ...]) -> None:
        old_names = {normalize_name(r.target.name) for r in self.references.get(note_id, ())}
        new_names = {normalize_name(r.target.name) for r in references}
        for name in old_names - new_names:
            _discard(self.dependents, name, (note_id,))
        for name in new_names - old_names:
            _insert(self.dependents, name, (note_id,))
        self.references[note_id] = references

    # ── edges ────────────────────────────────────────────────────────────

    def edges_from(self, source_id: str) -> frozenset[ResolvedLink]:
        return self.outgoing.get(source_id, _EMPTY) | self.dangling.get(source_id, _EMPTY)

    def set_edges(self, source_id: str, edges: Iterable[ResolvedLink]) -> tuple[set[ResolvedLink], set[ResolvedLink]]:
        """Replace a source's edges, touching only what changed.

        Returns:
            (added, removed) edge sets.
        """
        new = frozenset(edges)
        old = self.edges_from(source_id)
        added = set(new - old)
        removed = set(old - new)

        for edge in removed:
            if edge.is_resolved:
                _discard(self.incoming, edge.target_id, (edge,))
            else:
                _discard(self.placeholders, edge.unresolved, (edge,))
        for edge in added:
            if edge.is_resolved:
                _insert(self.incoming, edge.target_id, (edge,))
            else:
                _insert(self.placeholders, edge.unresolved, (edge,))

        resolved = frozenset(e for e in new if e.is_resolved)
        unresolved = new - resolved
        for mapping, value in ((self.outgoing, resolved), (self.dangling, unresolved)):
            if value:
                mapping[source_id] = value
            else:
                mapping.pop(source_id, None)
        return added, removed

    def compute_edges(self, source_id: str, resolver: Resolver) -> list[ResolvedLink]:
        edges = []
        for reference in self.references.get(source_id, ()):
            edge = resolver.link_for(reference)
            if edge is not None:
                edges.append(edge)
        return edges

    def snapshot(self, version: int) -> "IndexSnapshot":
        return IndexSnapshot(
            version=version,
            notes=MappingProxyType(self.notes),
            references=MappingProxyType(self.references),
            outgoing=MappingProxyType(self.outgoing),
            incoming=MappingProxyType(self.incoming),
            dangling=MappingProxyType(self.dangling),
            placeholders=MappingProxyType(self.placeholders),
            basenames=MappingProxyType(self.basenames),
        )


@dataclass(frozen=True)
class IndexSnapshot:
    """Read-only view of a published index state."""

    version: int
    notes: Mapping[str, NoteRecord]
    references: Mapping[str, tuple[RawReference, ...]]
    outgoing: Mapping[str, frozenset[ResolvedLink]]
    incoming: Mapping[str, frozenset[ResolvedLink]]
    dangling: Mapping[str, frozenset[ResolvedLink]]
    placeholders: Mapping[str, frozenset[ResolvedLink]]
    basenames: Mapping[str, frozenset[str]]

    def resolver(self, settings: IndexSettings) -> Resolver:
        return Resolver(
            self.notes,
            self.basenames,
            policy=settings.policy,
            attachment_extensions=settings.attachment_extensions,
        )

    def outgoing_for(self, note_id: str) -> frozenset[ResolvedLink]:
        return self.outgoing.get(note_id, _EMPTY)

    def incoming_for(self, note_id: str) -> frozenset[ResolvedLink]:
        return self.incoming.get(note_id, _EMPTY)

    def dangling_for(self, note_id: str) -> frozenset[ResolvedLink]:
        return self.dangling.get(note_id, _EMPTY)

    def path_of(self, note_id: str) -> str:
        record = self.notes.get(note_id)
        return record.path if record else note_id


def edge_sort_key(edge: ResolvedLink) -> tuple:
    return (edge.source_id, edge.line_number, edge.start)


class IndexBuilder:
    """Builds a fresh index from a whole corpus.

    Two phases: every document is registered and parsed first, then each
    note's references are resolved once all note ids are known. Both phases
    are iterable so a caller can yield between notes.
    """

    def __init__(self, settings: IndexSettings | None = None):
        self.settings = settings or IndexSettings()
        self._state = IndexState()
        self._contents: dict[str, str] = {}

    def add_document(self, document: NoteDocument) -> str | None:
        """Register and parse one document. Returns its NoteId, None if shadowed."""
        note_id = note_id_for_path(document.path)
        existing = self._state.notes.get(note_id)
        if existing is not None:
            if self.settings.extension_rank(document.path) >= self.settings.extension_rank(existing.path):
                log.warning("Skipping %s: NoteId %s already used by %s", document.path, note_id, existing.path)
                return None
            log.warning("Skipping %s: NoteId %s taken by %s", existing.path, note_id, document.path)

        self._state.add_note(
            NoteRecord(
                id=note_id,
                path=document.path,
                mtime=document.mtime,
                content_version=content_digest(document.content),
            )
        )
        self._state.set_references(note_id, self.settings.parse(document.content, note_id))
        return note_id

    def resolve_all(self) -> Iterator[str]:
        """Resolve every registered note, yielding each NoteId when done."""
        resolver = self._state.resolver(self.settings)
        for source_id in sorted(self._state.notes):
            self._state.set_edges(source_id, self._state.compute_edges(source_id, resolver))
            yield source_id

    def finish(self) -> IndexState:
        for _ in self.resolve_all():
            pass
        return self._state

    @property
    def state(self) -> IndexState:
        return self._state


def build_index(documents: Iterable[NoteDocument], settings: IndexSettings | None = None) -> IndexState:
    """Build an index from scratch. O(notes + references)."""
    builder = IndexBuilder(settings)
    for document in documents:
        builder.add_document(document)
    return builder.finish()


def check_invariants(
    state: IndexState,
    settings: IndexSettings,
    note_ids: Iterable[str] | None = None,
) -> list[str]:
    """Verify the index invariants.

    With note_ids, only the edges touching those notes are checked (used after
    an incremental delta); otherwise the whole index is.

    Returns:
        Human-readable problems. Empty when the index is consistent.
    """
    problems: list[str] = []
    notes = state.notes
    full = note_ids is None
    ids = set(notes) if full else set(note_ids)

    if full:
        for name, mapping in (
            ("outgoing", state.outgoing),
            ("incoming", state.incoming),
            ("dangling", state.dangling),
            ("references", state.references),
        ):
            for key in mapping:
                if key not in notes:
                    problems.append(f"{name} has unknown note {key}")
        names: Iterable[str] = list(state.placeholders)
    else:
        names = set()

    resolver = state.resolver(settings)

    for note_id in sorted(ids):
        if note_id not in notes:
            for name, mapping in (
                ("outgoing", state.outgoing),
                ("incoming", state.incoming),
                ("dangling", state.dangling),
                ("references", state.references),
            ):
                if note_id in mapping:
                    problems.append(f"{name} still holds removed note {note_id}")
            continue

        for edge in state.outgoing.get(note_id, _EMPTY):
            if edge.source_id != note_id or not edge.is_resolved:
                problems.append(f"outgoing[{note_id}] holds foreign edge {edge.source_id}->{edge.target_id}")
            elif edge.target_id not in notes:
                problems.append(f"{note_id} links to unknown note {edge.target_id}")
            elif edge not in state.incoming.get(edge.target_id, _EMPTY):
                problems.append(f"edge {note_id}->{edge.target_id} missing from incoming")

        for edge in state.incoming.get(note_id, _EMPTY):
            if edge.target_id != note_id:
                problems.append(f"incoming[{note_id}] holds edge to {edge.target_id}")
            elif edge not in state.outgoing.get(edge.source_id, _EMPTY):
                problems.append(f"backlink {edge.source_id}->{note_id} missing from outgoing")

        for edge in state.dangling.get(note_id, _EMPTY):
            if edge.is_resolved or edge.source_id != note_id:
                problems.append(f"dangling[{note_id}] holds a resolved or foreign edge")
                continue
            if not full:
                names.add(edge.unresolved)
            if edge not in state.placeholders.get(edge.unresolved, _EMPTY):
                problems.append(f"unresolved edge {note_id}->{edge.unresolved} missing from placeholders")

        expected = frozenset(state.compute_edges(note_id, resolver))
        if expected != state.edges_from(note_id):
            problems.append(f"edges of {note_id} do not match its latest parse")

    for name in names:
        for edge in state.placeholders.get(name, _EMPTY):
            if edge.is_resolved or edge.unresolved != name:
                problems.append(f"placeholders[{name}] holds edge for {edge.target_id or edge.unresolved}")
            elif edge not in state.dangling.get(edge.source_id, _EMPTY):
                problems.append(f"placeholder {edge.source_id}->{name} missing from dangling")

    return problems


def verify_invariants(state: IndexState, settings: IndexSettings, note_ids: Iterable[str] | None = None) -> None:
    """Raise IndexInvariantViolation if check_invariants finds problems."""
    problems = check_invariants(state, settings, note_ids)
    if problems:
        raise IndexInvariantViolation(problems)


def notes_named(state: IndexState, name: str) -> set[str]:
    """Sources whose references name `name` (a basename, any case)."""
    return set(state.dependents.get(normalize_name(basename_of(name)), _EMPTY))
