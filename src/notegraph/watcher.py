"""File watcher that turns filesystem changes into index deltas."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import DEFAULT_DEBOUNCE_SECONDS
from .corpus import FileSystemCorpus
from .models import DeltaEvent, NoteCreated, NoteDeleted, NoteEdited, NoteRenamed

if TYPE_CHECKING:
    from .store import IndexStore

logger = logging.getLogger(__name__)


def _relative(corpus: FileSystemCorpus, raw_path: str | bytes | None) -> str | None:
    if not raw_path:
        return None
    if isinstance(raw_path, bytes):
        raw_path = raw_path.decode()
    try:
        return corpus.relative(raw_path)
    except ValueError:
        return None


def deltas_for_event(event: FileSystemEvent, corpus: FileSystemCorpus) -> list[DeltaEvent]:
    """Map one watchdog event to index deltas (possibly none).

    Moves between a note path and a non-note path count as a delete or an
    edit: editors that save through a temporary file show up as a move onto
    the note.
    """
    if event.is_directory:
        return []

    src = _relative(corpus, event.src_path)
    src_is_note = src is not None and corpus.is_note_path(src)

    if event.event_type == "moved":
        dest = _relative(corpus, getattr(event, "dest_path", None))
        dest_is_note = dest is not None and corpus.is_note_path(dest)
        if src_is_note and dest_is_note:
            return [NoteRenamed(old_path=src, new_path=dest)]
        if src_is_note:
            return [NoteDeleted(path=src)]
        if dest_is_note:
            return [NoteEdited(path=dest)]
        return []

    if not src_is_note:
        return []
    if event.event_type == "created":
        return [NoteCreated(path=src)]
    if event.event_type == "modified":
        return [NoteEdited(path=src)]
    if event.event_type == "deleted":
        return [NoteDeleted(path=src)]
    return []


def coalesce(events: list[DeltaEvent]) -> list[DeltaEvent]:
    """Drop edits already covered by an earlier create or edit of the same path."""
    result: list[DeltaEvent] = []
    for event in events:
        if isinstance(event, NoteEdited) and result:
            last = result[-1]
            if isinstance(last, (NoteCreated, NoteEdited)) and last.path == event.path:
                continue
        result.append(event)
    return result


class DebouncedHandler(FileSystemEventHandler):
    """Collects deltas from the observer thread and hands them to the event loop in batches."""

    def __init__(
        self,
        corpus: FileSystemCorpus,
        callback: Callable[[list[DeltaEvent]], None],
        loop: asyncio.AbstractEventLoop,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        """Initialize the debounced handler.

        Args:
            corpus: Corpus used to map absolute paths to note paths.
            callback: Called on the loop thread with each batch of deltas.
            loop: Event loop that owns the debounce timer and the callback.
            debounce_seconds: Quiet period before a batch is delivered.
        """
        super().__init__()
        self._corpus = corpus
        self._callback = callback
        self._loop = loop
        self._debounce_seconds = debounce_seconds
        self._pending: list[DeltaEvent] = []
        self._pending_lock = threading.Lock()
        self._timer: asyncio.TimerHandle | None = None

    def _reset_timer(self) -> None:
        # Runs on the loop thread
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self._debounce_seconds, self.flush)

    def flush(self) -> None:
        """Deliver pending deltas now."""
        self._timer = None
        with self._pending_lock:
            events = coalesce(self._pending)
            self._pending.clear()
        if events:
            self._callback(events)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def on_any_event(self, event: FileSystemEvent) -> None:
        deltas = deltas_for_event(event, self._corpus)
        if not deltas:
            return
        with self._pending_lock:
            self._pending.extend(deltas)
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._reset_timer)


class CorpusWatcher:
    """Watch the notes root and apply changes to an IndexStore.

    Must be started from a coroutine: deltas are applied on the running
    event loop, one at a time, in the order they were observed.
    """

    def __init__(
        self,
        store: "IndexStore",
        corpus: FileSystemCorpus | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        """Initialize the watcher.

        Args:
            store: Index to update on changes.
            corpus: Filesystem corpus to watch. Defaults to the store's corpus.
            debounce_seconds: Debounce window for batching updates.
        """
        self._store = store
        self._corpus = corpus or store.corpus
        if not isinstance(self._corpus, FileSystemCorpus):
            raise TypeError("CorpusWatcher needs a FileSystemCorpus")
        self._debounce_seconds = debounce_seconds
        self._observer: Observer | None = None
        self._handler: DebouncedHandler | None = None
        self._queue: asyncio.Queue[DeltaEvent] | None = None
        self._consumer: asyncio.Task | None = None
        self._running = False

    def _on_deltas(self, events: list[DeltaEvent]) -> None:
        logger.info("Applying %d change(s) from the notes root", len(events))
        for event in events:
            self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                report = await self._store.apply_delta(event)
                if report.failures:
                    for failure in report.failures:
                        logger.warning("Link rewrite failed in %s: %s", failure.path, failure.reason)
            except Exception as e:
                logger.warning("Failed to apply %s for %s: %s", event.event, event, e)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Start watching for file changes."""
        if self._running:
            return

        root = self._corpus.root
        if not root.exists():
            logger.warning("Notes root does not exist: %s", root)
            return

        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._consumer = loop.create_task(self._consume())
        self._handler = DebouncedHandler(
            self._corpus,
            callback=self._on_deltas,
            loop=loop,
            debounce_seconds=self._debounce_seconds,
        )
        self._observer = Observer()
        self._observer.schedule(self._handler, str(root), recursive=True)
        self._observer.start()
        self._running = True
        logger.info("Started watching: %s", root)

    async def drain(self) -> None:
        """Deliver pending changes immediately and wait until they are applied."""
        if self._handler is not None:
            self._handler.flush()
        if self._queue is not None:
            await self._queue.join()

    def stop(self) -> None:
        """Stop watching for file changes."""
        if not self._running or self._observer is None:
            return

        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        if self._handler is not None:
            self._handler.cancel()
            self._handler = None
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        self._running = False
        logger.info("Stopped file watcher")

    @property
    def is_running(self) -> bool:
        return self._running

    def __enter__(self) -> "CorpusWatcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
