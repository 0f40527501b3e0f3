"""Shared test fixtures for the notegraph test suite.

Design:
- notes_root: empty notes directory in a temp dir
- write_note: helper to create notes (folders created as needed)
- corpus / settings: filesystem corpus and default index settings
- runner: CliRunner with NOTEGRAPH_NOTES_ROOT pointed at notes_root
- Async tests use @pytest.mark.asyncio (function-scoped loops)
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from notegraph.corpus import FileSystemCorpus
from notegraph.index import IndexSettings
from notegraph.store import IndexStore

# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def notes_root(tmp_path: Path) -> Path:
    """Create an empty notes directory."""
    root = tmp_path / "notes"
    root.mkdir()
    return root


@pytest.fixture
def write_note(notes_root: Path) -> Callable[..., Path]:
    """Write a note under notes_root.

    Usage:
        def test_something(write_note):
            write_note("x/proj.md", "see [[other]]")
            write_note("old.md", "", mtime=1_000)
    """

    def _write(rel_path: str, content: str = "", mtime: float | None = None) -> Path:
        path = notes_root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _write


@pytest.fixture
def corpus(notes_root: Path) -> FileSystemCorpus:
    return FileSystemCorpus(notes_root)


@pytest.fixture
def settings() -> IndexSettings:
    return IndexSettings()


@pytest.fixture
def make_store(corpus: FileSystemCorpus, settings: IndexSettings):
    """Factory for opened stores over the notes_root corpus.

    Usage:
        async def test_x(write_note, make_store):
            write_note("a.md", "[[b]]")
            store = await make_store()
    """

    async def _make(**kwargs) -> IndexStore:
        return await IndexStore(corpus, settings, **kwargs).open()

    return _make


@pytest.fixture
def scenario_a(write_note) -> None:
    """Corpus {a: "see [[b]]", b: ""}."""
    write_note("a.md", "see [[b]]")
    write_note("b.md", "")


# ─────────────────────────────────────────────────────────────────────────────
# CLI Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def runner(notes_root: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[CliRunner, None, None]:
    """CLI runner with the notes root configured through the environment."""
    monkeypatch.setenv("NOTEGRAPH_NOTES_ROOT", str(notes_root))
    monkeypatch.chdir(notes_root.parent)
    yield CliRunner()

