"""The live link index: one writer, many readers.

Readers work on the published IndexSnapshot, which never changes after it is
published. The writer (a delta or a rebuild) works on a private clone and
swaps the published snapshot in one assignment when it is done, so a reader
sees either the whole delta or none of it.

Writes are serialized with an asyncio.Lock. A full rebuild runs as a task
that yields every `rebuild_batch_size` notes; requesting another rebuild
cancels the running one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import TypeAdapter

from . import analyzer
from .config import DEFAULT_REBUILD_BATCH_SIZE, NotegraphConfig
from .corpus import CorpusProvider, FileSystemCorpus
from .errors import IndexInvariantViolation, NoteNotFoundError
from .index import IndexBuilder, IndexSettings, IndexSnapshot, IndexState, check_invariants, edge_sort_key, verify_invariants
from .models import (
    DeltaEvent,
    DeltaReport,
    IndexStats,
    NoteRecord,
    NoteRenamed,
    OrphanReport,
    PlaceholderGroup,
    Resolution,
    ResolvedLink,
)
from .parser.links import note_id_for_path
from .updater import IndexUpdater

log = logging.getLogger(__name__)

_delta_adapter = TypeAdapter(DeltaEvent)


def _event_note_id(event: Any) -> str:
    path = getattr(event, "new_path", None) or getattr(event, "path", "")
    return note_id_for_path(path)


class IndexStore:
    """Owns the published index and applies changes to it.

    Args:
        corpus: Where notes are read from (and rename rewrites written to).
        settings: Parsing and resolution settings.
        rebuild_batch_size: Notes processed between yields during a rebuild.
        verify_invariants: Check touched notes after every delta and rebuild
            when a check fails.
    """

    def __init__(
        self,
        corpus: CorpusProvider,
        settings: IndexSettings | None = None,
        *,
        rebuild_batch_size: int = DEFAULT_REBUILD_BATCH_SIZE,
        verify_invariants: bool = True,
    ):
        self.corpus = corpus
        self.settings = settings or IndexSettings()
        self.rebuild_batch_size = max(1, rebuild_batch_size)
        self.verify_invariants = verify_invariants
        self.updater = IndexUpdater(corpus, self.settings)

        self._state = IndexState()
        self._version = 0
        self._snapshot = self._state.snapshot(self._version)
        self._lock = asyncio.Lock()
        self._rebuild_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: NotegraphConfig) -> "IndexStore":
        corpus = FileSystemCorpus(config.notes_root, config.extensions)
        return cls(
            corpus,
            IndexSettings.from_config(config),
            rebuild_batch_size=config.rebuild_batch_size,
            verify_invariants=config.verify_invariants,
        )

    # ── lifecycle ────────────────────────────────────────────────────────

    async def open(self) -> "IndexStore":
        await self.rebuild_index()
        return self

    async def close(self) -> None:
        task = self._rebuild_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._rebuild_task = None

    async def __aenter__(self) -> "IndexStore":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── publication ──────────────────────────────────────────────────────

    @property
    def snapshot(self) -> IndexSnapshot:
        """The current published snapshot. Safe to hold across awaits."""
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version

    def _publish(self, state: IndexState) -> IndexSnapshot:
        self._version += 1
        snapshot = state.snapshot(self._version)
        self._state = state
        self._snapshot = snapshot
        return snapshot

    # ── rebuild ──────────────────────────────────────────────────────────

    async def rebuild_index(self) -> IndexSnapshot:
        """Rebuild from the whole corpus and publish the result.

        A rebuild already in progress is cancelled and superseded; callers
        awaiting it receive the newer rebuild's snapshot instead.
        """
        previous = self._rebuild_task
        if previous is not None and not previous.done():
            log.info("Superseding rebuild in progress")
            previous.cancel()

        task = asyncio.create_task(self._rebuild())
        self._rebuild_task = task
        return await self._await_rebuild(task)

    async def _await_rebuild(self, task: asyncio.Task) -> IndexSnapshot:
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                latest = self._rebuild_task
                if task.cancelled() and latest is not None and latest is not task:
                    task = latest
                    continue
                raise

    async def _rebuild(self) -> IndexSnapshot:
        async with self._lock:
            builder = IndexBuilder(self.settings)
            for count, document in enumerate(self.corpus.iter_documents(), 1):
                builder.add_document(document)
                if count % self.rebuild_batch_size == 0:
                    await asyncio.sleep(0)
            for count, _ in enumerate(builder.resolve_all(), 1):
                if count % self.rebuild_batch_size == 0:
                    await asyncio.sleep(0)

            state = builder.state
            if self.verify_invariants:
                verify_invariants(state, self.settings)
            snapshot = self._publish(state)

        log.info(
            "Index rebuilt: %d notes, %d links, %d placeholders (version %d)",
            len(snapshot.notes),
            sum(len(edges) for edges in snapshot.outgoing.values()),
            len(snapshot.placeholders),
            snapshot.version,
        )
        return snapshot

    # ── deltas ───────────────────────────────────────────────────────────

    async def apply_delta(self, event: DeltaEvent | dict) -> DeltaReport:
        """Apply one corpus change and publish the updated index.

        If the incremental result fails its invariant check, or the update
        raises, the current snapshot stays published and a full rebuild
        replaces it. The returned report then has `recovered` set.
        """
        if isinstance(event, dict):
            event = _delta_adapter.validate_python(event)

        async with self._lock:
            state = self._state.clone()
            report: DeltaReport | None = None
            try:
                if isinstance(event, NoteRenamed):
                    # Rename rewrites touch the disk
                    applied = await asyncio.to_thread(self.updater.apply, state, event)
                else:
                    applied = self.updater.apply(state, event)
                report = applied.report
                if self.verify_invariants and applied.touched:
                    verify_invariants(state, self.settings, applied.touched)
            except IndexInvariantViolation as e:
                log.error("Delta %s left the index inconsistent: %s", event.event, e)
            except Exception as e:
                log.error("Failed to apply %s delta: %s", event.event, e, exc_info=True)
            else:
                self._publish(state)
                log.debug("Applied %s delta for %s (version %d)", event.event, report.note_id, self._version)
                return report

        if report is None:
            report = DeltaReport(event=event.event, note_id=_event_note_id(event))
        report.recovered = True
        await self.rebuild_index()
        return report

    # ── queries ──────────────────────────────────────────────────────────

    def _note_id(self, note_id: str, snapshot: IndexSnapshot) -> str:
        """Accept a NoteId or a corpus path with its extension."""
        if note_id in snapshot.notes:
            return note_id
        stripped = note_id_for_path(note_id)
        if stripped in snapshot.notes and snapshot.notes[stripped].path == note_id:
            return stripped
        return note_id

    def get_note(self, note_id: str) -> NoteRecord:
        snapshot = self._snapshot
        record = snapshot.notes.get(self._note_id(note_id, snapshot))
        if record is None:
            raise NoteNotFoundError(note_id)
        return record

    def list_notes(self) -> list[NoteRecord]:
        snapshot = self._snapshot
        return [snapshot.notes[i] for i in sorted(snapshot.notes)]

    def get_outgoing_links(self, note_id: str, include_unresolved: bool = False) -> list[ResolvedLink]:
        """Edges leaving a note in document order. Empty for unknown notes."""
        snapshot = self._snapshot
        note_id = self._note_id(note_id, snapshot)
        edges = snapshot.outgoing_for(note_id)
        if include_unresolved:
            edges = edges | snapshot.dangling_for(note_id)
        return sorted(edges, key=lambda e: (e.line_number, e.start))

    def get_backlinks(self, note_id: str) -> list[ResolvedLink]:
        """Resolved edges entering a note, ordered by source then position."""
        snapshot = self._snapshot
        return sorted(snapshot.incoming_for(self._note_id(note_id, snapshot)), key=edge_sort_key)

    def get_placeholders(self) -> list[PlaceholderGroup]:
        return analyzer.list_placeholders(self._snapshot)

    def get_placeholder_counts(self) -> dict[str, int]:
        return analyzer.placeholder_counts(self._snapshot)

    def get_placeholders_in_note(self, note_id: str) -> list[ResolvedLink]:
        snapshot = self._snapshot
        return analyzer.placeholders_in_note(snapshot, self._note_id(note_id, snapshot))

    def get_orphans(self) -> OrphanReport:
        return analyzer.classify_orphans(self._snapshot)

    def is_orphan(self, note_id: str) -> bool:
        snapshot = self._snapshot
        return analyzer.is_orphan(snapshot, self._note_id(note_id, snapshot))

    def resolve(self, raw_target_text: str, from_note_id: str = "") -> Resolution:
        """Resolve typed link text as if it were written in from_note_id."""
        snapshot = self._snapshot
        return snapshot.resolver(self.settings).resolve_text(
            raw_target_text, from_note_id, self.settings.known_extensions
        )

    def resolve_reference(self, raw_target_text: str, from_note_id: str = "") -> str | None:
        """The NoteId the text would link to, or None if it would be a placeholder."""
        return self.resolve(raw_target_text, from_note_id).winner

    def stats(self) -> IndexStats:
        return analyzer.index_stats(self._snapshot)

    def check(self) -> list[str]:
        """Run the full invariant check against the published state."""
        return check_invariants(self._state, self.settings)
