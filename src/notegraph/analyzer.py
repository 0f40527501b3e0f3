"""Derived views over a published index snapshot.

Nothing here is maintained incrementally; every query recomputes from the
snapshot it is given.
"""

from __future__ import annotations

from .index import IndexSnapshot, edge_sort_key
from .models import IndexStats, OrphanReport, PlaceholderGroup, ResolvedLink


def classify_orphans(snapshot: IndexSnapshot) -> OrphanReport:
    """Classify notes by link degree.

    - isolated: no resolved outgoing links and no backlinks
    - source_only: links out, nothing links in
    - sink_only: linked to, links nowhere
    Notes with both directions are not orphans and appear in no list.
    """
    report = OrphanReport()
    for note_id in sorted(snapshot.notes):
        has_outgoing = bool(snapshot.outgoing_for(note_id))
        has_incoming = bool(snapshot.incoming_for(note_id))
        if not has_outgoing and not has_incoming:
            report.isolated.append(note_id)
        elif has_outgoing and not has_incoming:
            report.source_only.append(note_id)
        elif has_incoming and not has_outgoing:
            report.sink_only.append(note_id)
    return report


def is_orphan(snapshot: IndexSnapshot, note_id: str) -> bool:
    """True when the note has no resolved connections at all."""
    return not snapshot.outgoing_for(note_id) and not snapshot.incoming_for(note_id)


def _placeholder_key(snapshot: IndexSnapshot):
    def key(edge: ResolvedLink) -> tuple:
        return (snapshot.path_of(edge.source_id), edge.line_number, edge.start)

    return key


def list_placeholders(snapshot: IndexSnapshot) -> list[PlaceholderGroup]:
    """Unresolved references grouped by normalized target name.

    Groups are sorted by name; references within a group by source path,
    then line number.
    """
    key = _placeholder_key(snapshot)
    return [
        PlaceholderGroup(target=name, refs=sorted(snapshot.placeholders[name], key=key))
        for name in sorted(snapshot.placeholders)
    ]


def placeholder_counts(snapshot: IndexSnapshot) -> dict[str, int]:
    """Number of unresolved references per target name."""
    return {name: len(snapshot.placeholders[name]) for name in sorted(snapshot.placeholders)}


def placeholders_in_note(snapshot: IndexSnapshot, note_id: str) -> list[ResolvedLink]:
    """Unresolved references written in one note, in document order."""
    return sorted(snapshot.dangling_for(note_id), key=edge_sort_key)


def index_stats(snapshot: IndexSnapshot) -> IndexStats:
    resolved = [e for edges in snapshot.outgoing.values() for e in edges]
    unresolved = sum(len(edges) for edges in snapshot.dangling.values())
    return IndexStats(
        version=snapshot.version,
        notes=len(snapshot.notes),
        references=sum(len(refs) for refs in snapshot.references.values()),
        resolved_edges=len(resolved),
        unresolved_edges=unresolved,
        placeholders=len(snapshot.placeholders),
        ambiguous_edges=sum(1 for e in resolved if e.is_ambiguous),
    )
