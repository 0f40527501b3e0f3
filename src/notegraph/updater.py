"""Incremental index maintenance.

Each operation receives an unpublished IndexState (a clone of the current
one) and brings it to the state a full build of the new corpus would
produce, touching only the notes the change can affect:

- the changed note itself;
- notes whose references name the changed note's basename (the
  `dependents` map), because creating, deleting or renaming a note can
  change what those references resolve to.

Callers publish the state only after the operation returns, so readers never
see a half-applied delta.
"""

from __future__ import annotations

import logging
import time
from pathlib import PurePosixPath
from typing import NamedTuple

from .corpus import CorpusProvider, NoteDocument
from .index import IndexSettings, IndexState, content_digest, notes_named
from .models import (
    DeltaReport,
    NoteCreated,
    NoteDeleted,
    NoteEdited,
    NoteRecord,
    NoteRenamed,
    RawReference,
    RewriteFailure,
    TargetSpec,
)
from .parser.links import basename_of, normalize_name, note_id_for_path, rewrite_reference_names

log = logging.getLogger(__name__)


class AppliedDelta(NamedTuple):
    """A delta's report plus every note id whose edges it touched."""

    report: DeltaReport
    touched: set[str]


class _RewritePlan(NamedTuple):
    source_id: str
    path: str
    content: str
    references: list[RawReference]


class IndexUpdater:
    """Applies single-file deltas to an index state.

    Args:
        corpus: Provider used to read changed notes and write rename rewrites.
        settings: Parsing and resolution settings (must match the full build).
    """

    def __init__(self, corpus: CorpusProvider, settings: IndexSettings):
        self.corpus = corpus
        self.settings = settings

    def apply(self, state: IndexState, event) -> AppliedDelta:
        """Dispatch one delta event."""
        if isinstance(event, NoteCreated):
            return self.create(state, event.path, event.content)
        if isinstance(event, NoteEdited):
            return self.edit(state, event.path, event.content)
        if isinstance(event, NoteDeleted):
            return self.delete(state, event.path)
        if isinstance(event, NoteRenamed):
            return self.rename(state, event.old_path, event.new_path, rewrite_links=event.rewrite_links)
        raise TypeError(f"Unsupported delta event: {event!r}")

    # ── helpers ──────────────────────────────────────────────────────────

    def _load(self, path: str, content: str | None) -> NoteDocument:
        if content is None:
            return self.corpus.read(path)
        mtime = self.corpus.stat_mtime(path) if self.corpus.exists(path) else time.time()
        return NoteDocument(path=path, content=content, mtime=mtime)

    def _set_source(self, state: IndexState, document: NoteDocument, note_id: str, delta: AppliedDelta) -> None:
        """Record a note's latest content and recompute its own edges."""
        state.add_note(
            NoteRecord(
                id=note_id,
                path=document.path,
                mtime=document.mtime,
                content_version=content_digest(document.content),
            )
        )
        state.set_references(note_id, self.settings.parse(document.content, note_id))
        added, removed = state.set_edges(note_id, state.compute_edges(note_id, state.resolver(self.settings)))
        delta.touched.add(note_id)
        delta.touched.update(e.target_id for e in added | removed if e.is_resolved)

    def _clear_source(self, state: IndexState, note_id: str, delta: AppliedDelta) -> None:
        """Drop a note and every edge leaving it."""
        _, removed = state.set_edges(note_id, ())
        delta.touched.add(note_id)
        delta.touched.update(e.target_id for e in removed if e.is_resolved)
        state.remove_note(note_id)

    def _reresolve(self, state: IndexState, source_ids: set[str], delta: AppliedDelta) -> None:
        """Recompute edges of notes whose references may now resolve differently."""
        resolver = state.resolver(self.settings)
        for source_id in sorted(source_ids):
            if source_id not in state.notes:
                continue
            added, removed = state.set_edges(source_id, state.compute_edges(source_id, resolver))
            if not added and not removed:
                continue

            before = {e.start: e for e in removed}
            for edge in added:
                previous = before.get(edge.start)
                if previous is None:
                    continue
                if edge.is_resolved and not previous.is_resolved:
                    delta.report.promoted += 1
                elif previous.is_resolved and not edge.is_resolved:
                    delta.report.demoted += 1

            if source_id != delta.report.note_id and source_id not in delta.report.reresolved:
                delta.report.reresolved.append(source_id)
            delta.touched.add(source_id)
            delta.touched.update(e.target_id for e in added | removed if e.is_resolved)

    @staticmethod
    def _new_delta(event: str, note_id: str) -> AppliedDelta:
        return AppliedDelta(DeltaReport(event=event, note_id=note_id), set())

    # ── create ───────────────────────────────────────────────────────────

    def create(self, state: IndexState, path: str, content: str | None = None) -> AppliedDelta:
        """Index a new note and promote references that now resolve to it."""
        note_id = note_id_for_path(path)
        delta = self._new_delta("create", note_id)

        if not self.corpus.is_note_path(path):
            delta.report.skipped = True
            return delta

        existing = state.notes.get(note_id)
        if existing is not None and existing.path != path:
            if self.settings.extension_rank(path) >= self.settings.extension_rank(existing.path):
                log.warning("Skipping %s: NoteId %s already used by %s", path, note_id, existing.path)
                delta.report.skipped = True
                return delta
        elif existing is not None:
            return self._edit_known(state, path, content, delta)

        try:
            document = self._load(path, content)
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Cannot index new note %s: %s", path, e)
            delta.report.skipped = True
            return delta

        self._set_source(state, document, note_id, delta)
        self._reresolve(state, notes_named(state, note_id) - {note_id}, delta)
        log.debug("Created %s (promoted %d)", note_id, delta.report.promoted)
        return delta

    # ── edit ─────────────────────────────────────────────────────────────

    def edit(self, state: IndexState, path: str, content: str | None = None) -> AppliedDelta:
        """Re-parse one note and apply the per-edge difference."""
        note_id = note_id_for_path(path)
        existing = state.notes.get(note_id)
        if existing is None:
            return self.create(state, path, content)
        delta = self._new_delta("edit", note_id)
        if existing.path != path:
            # A shadowed sibling (same stem, other extension) changed
            delta.report.skipped = True
            return delta
        return self._edit_known(state, path, content, delta)

    def _edit_known(self, state: IndexState, path: str, content: str | None, delta: AppliedDelta) -> AppliedDelta:
        note_id = delta.report.note_id
        previous = state.notes[note_id]
        try:
            document = self._load(path, content)
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Cannot re-read %s, keeping last parse: %s", path, e)
            delta.report.skipped = True
            return delta

        digest = content_digest(document.content)
        if digest == previous.content_version and document.mtime == previous.mtime:
            return delta

        self._set_source(state, document, note_id, delta)

        # Another note may win (or lose) a most-recent tie-break now
        if document.mtime != previous.mtime and len(state.basenames.get(normalize_name(basename_of(note_id)), ())) > 1:
            self._reresolve(state, notes_named(state, note_id) - {note_id}, delta)
        return delta

    # ── delete ───────────────────────────────────────────────────────────

    def delete(self, state: IndexState, path: str) -> AppliedDelta:
        """Remove a note; references into it fall back to other candidates or placeholders."""
        note_id = note_id_for_path(path)
        delta = self._new_delta("delete", note_id)
        existing = state.notes.get(note_id)
        if existing is None or existing.path != path:
            delta.report.skipped = True
            return delta

        self._clear_source(state, note_id, delta)
        self._reresolve(state, notes_named(state, note_id), delta)
        log.debug("Deleted %s (demoted %d)", note_id, delta.report.demoted)

        # A same-stem file with another extension takes over the NoteId
        stem = str(PurePosixPath(path).with_suffix(""))
        for ext in self.settings.note_extensions:
            sibling = f"{stem}{ext}"
            if sibling != path and self.corpus.exists(sibling):
                follow_up = self.create(state, sibling)
                delta.report.promoted += follow_up.report.promoted
                delta.touched.update(follow_up.touched)
                for source_id in follow_up.report.reresolved:
                    if source_id not in delta.report.reresolved:
                        delta.report.reresolved.append(source_id)
                break
        return delta

    # ── rename / move ────────────────────────────────────────────────────

    def rename(
        self,
        state: IndexState,
        old_path: str,
        new_path: str,
        *,
        rewrite_links: bool = True,
    ) -> AppliedDelta:
        """Move a note and rewrite the references that pointed at it.

        Index bookkeeping is Delete(old) followed by Create(new). The rewrite
        step then edits each referencing note's text so it names the new note,
        writes it through the corpus and re-parses it. A failed write is
        reported and that note keeps its old text (and thus a placeholder).
        """
        old_id = note_id_for_path(old_path)
        new_id = note_id_for_path(new_path)
        existing = state.notes.get(old_id)

        if existing is None or existing.path != old_path:
            delta = self.create(state, new_path)
            delta.report.event = "rename"
            return delta
        if not self.corpus.is_note_path(new_path):
            delta = self.delete(state, old_path)
            delta.report.event = "rename"
            return delta

        delta = self._new_delta("rename", new_id)
        try:
            document = self.corpus.read(new_path)
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Cannot read renamed note %s: %s", new_path, e)
            follow_up = self.delete(state, old_path)
            follow_up.report.event = "rename"
            follow_up.report.skipped = True
            return follow_up

        plans: list[_RewritePlan] = []
        if rewrite_links:
            plans = self._plan_rewrites(state, old_id, new_path, delta)

        if new_id != old_id and new_id in state.notes:
            # The move replaced another note
            self._clear_source(state, new_id, delta)
        self._clear_source(state, old_id, delta)
        self._set_source(state, document, new_id, delta)

        for plan in plans:
            self._apply_rewrite(state, plan, old_id, new_id, new_path, delta)

        affected = notes_named(state, old_id) | notes_named(state, new_id)
        self._reresolve(state, affected - {new_id}, delta)
        log.info(
            "Renamed %s -> %s: %d note(s) rewritten, %d failure(s)",
            old_id,
            new_id,
            len(delta.report.rewritten),
            len(delta.report.failures),
        )
        return delta

    def _plan_rewrites(self, state: IndexState, old_id: str, new_path: str, delta: AppliedDelta) -> list[_RewritePlan]:
        """Find, in each referencing note's current text, the references to old_id."""
        resolver = state.resolver(self.settings)
        sources = sorted({e.source_id for e in state.incoming.get(old_id, ())})
        plans = []
        for source_id in sources:
            path = new_path if source_id == old_id else state.notes[source_id].path
            try:
                content = self.corpus.read(path).content
            except (OSError, UnicodeDecodeError) as e:
                delta.report.failures.append(RewriteFailure(note_id=source_id, path=path, reason=f"read failed: {e}"))
                continue
            references = [
                r
                for r in self.settings.parse(content, source_id)
                if resolver.resolve(r).winner == old_id
            ]
            if references:
                plans.append(_RewritePlan(source_id, path, content, references))
        return plans

    def _replacement_name(
        self,
        state: IndexState,
        reference: RawReference,
        old_id: str,
        new_id: str,
        new_path: str,
    ) -> str:
        """Shortest edit of the typed name that still resolves to new_id.

        The typed folder prefix and letter case are kept where possible, so
        renaming back restores the original text. The full id is the fallback.
        """
        target = reference.target
        resolver = state.resolver(self.settings)
        new_base = basename_of(new_id)

        attempts = []
        for base in dict.fromkeys((_match_case(target.name, basename_of(old_id), new_base), new_base)):
            if target.path is not None:
                prefix = target.path.rsplit("/", 1)[0]
                attempts.append(TargetSpec(name=base, path=f"{prefix}/{base}"))
            else:
                attempts.append(TargetSpec(name=base))

        name = new_id
        for attempt in attempts:
            if resolver.resolve_target(attempt, reference.source_id).winner == new_id:
                name = attempt.path or attempt.name
                break
        if target.extension:
            name += PurePosixPath(new_path).suffix
        return name

    def _apply_rewrite(
        self,
        state: IndexState,
        plan: _RewritePlan,
        old_id: str,
        new_id: str,
        new_path: str,
        delta: AppliedDelta,
    ) -> None:
        source_id = new_id if plan.source_id == old_id else plan.source_id
        if source_id not in state.notes:
            return
        references = [r.model_copy(update={"source_id": source_id}) for r in plan.references]
        replacements = [
            (r.name_start, r.name_end, self._replacement_name(state, r, old_id, new_id, new_path))
            for r in references
        ]
        rewritten = rewrite_reference_names(plan.content, replacements)
        if rewritten == plan.content:
            return

        try:
            self.corpus.write_text(plan.path, rewritten)
        except OSError as e:
            log.warning("Could not rewrite links in %s: %s", plan.path, e)
            delta.report.failures.append(RewriteFailure(note_id=source_id, path=plan.path, reason=str(e)))
            return

        self._set_source(
            state,
            NoteDocument(path=plan.path, content=rewritten, mtime=self.corpus.stat_mtime(plan.path)),
            source_id,
            delta,
        )
        delta.report.rewritten.append(source_id)


def _match_case(typed: str, old: str, new: str) -> str:
    """Carry the letter case a reference used for `old` over to `new`."""
    if typed == old or old == new:
        return new if typed == old else typed
    for transform in (str.lower, str.upper, str.title):
        if typed == transform(old):
            return transform(new)
    return new
