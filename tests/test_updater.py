"""Tests for notegraph.updater.

Every delta must leave the index equal to a full rebuild of the corpus as it
now stands on disk, so most tests finish with `_assert_matches_rebuild`.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from notegraph.index import build_index, check_invariants
from notegraph.models import NoteCreated, NoteDeleted, NoteEdited, NoteRenamed
from notegraph.updater import IndexUpdater


def _build(corpus, settings):
    return build_index(corpus.iter_documents(), settings)


def _assert_matches_rebuild(state, corpus, settings):
    assert check_invariants(state, settings) == []
    assert state == _build(corpus, settings)


def _move(notes_root: Path, old: str, new: str) -> None:
    target = notes_root / new
    target.parent.mkdir(parents=True, exist_ok=True)
    (notes_root / old).rename(target)


def _text(notes_root: Path, rel: str) -> str:
    return (notes_root / rel).read_text(encoding="utf-8")


@pytest.fixture
def updater(corpus, settings) -> IndexUpdater:
    return IndexUpdater(corpus, settings)


# ─────────────────────────────────────────────────────────────────────────────
# Create
# ─────────────────────────────────────────────────────────────────────────────


class TestCreate:
    def test_placeholder_promoted(self, write_note, corpus, settings, updater):
        """{a: "[[missing]]"} then Create(missing): the placeholder becomes a backlink."""
        write_note("a.md", "[[missing]]")
        state = _build(corpus, settings)
        assert "missing" in state.placeholders

        write_note("missing.md", "")
        delta = updater.create(state, "missing.md")

        assert "missing" not in state.placeholders
        assert [e.source_id for e in state.incoming["missing"]] == ["a"]
        assert delta.report.promoted == 1
        assert delta.report.reresolved == ["a"]
        assert delta.touched >= {"a", "missing"}
        _assert_matches_rebuild(state, corpus, settings)

    def test_new_note_changes_tie_break(self, write_note, corpus, settings, updater):
        write_note("y/proj.md")
        write_note("x/c.md", "[[proj]]")
        state = _build(corpus, settings)
        (edge,) = state.outgoing["x/c"]
        assert edge.target_id == "y/proj"

        write_note("x/proj.md")
        delta = updater.create(state, "x/proj.md")

        (edge,) = state.outgoing["x/c"]
        assert edge.target_id == "x/proj"
        assert edge.candidates == ("x/proj", "y/proj")
        assert delta.report.reresolved == ["x/c"]
        _assert_matches_rebuild(state, corpus, settings)

    def test_content_supplied_by_caller(self, write_note, corpus, settings, updater):
        write_note("a.md", "[[b]]")
        state = _build(corpus, settings)
        write_note("b.md", "[[a]]")
        updater.apply(state, NoteCreated(path="b.md", content="[[a]]"))
        assert {e.source_id for e in state.incoming["a"]} == {"b"}
        _assert_matches_rebuild(state, corpus, settings)

    def test_non_note_path_skipped(self, write_note, corpus, settings, updater):
        state = _build(corpus, settings)
        write_note("image.png", "binary")
        delta = updater.create(state, "image.png")
        assert delta.report.skipped
        assert state.notes == {}

    def test_hidden_path_skipped(self, write_note, corpus, settings, updater):
        state = _build(corpus, settings)
        write_note(".templates/daily.md", "[[x]]")
        assert updater.create(state, ".templates/daily.md").report.skipped

    def test_lower_ranked_sibling_skipped(self, write_note, corpus, settings, updater):
        write_note("a.md", "")
        state = _build(corpus, settings)
        write_note("a.txt", "[[zzz]]")
        assert updater.create(state, "a.txt").report.skipped
        assert state.notes["a"].path == "a.md"
        _assert_matches_rebuild(state, corpus, settings)

    def test_higher_ranked_sibling_takes_over(self, write_note, corpus, settings, updater):
        write_note("a.txt", "[[old]]")
        state = _build(corpus, settings)
        write_note("a.md", "[[new]]")
        updater.create(state, "a.md")
        assert state.notes["a"].path == "a.md"
        assert set(state.placeholders) == {"new"}
        _assert_matches_rebuild(state, corpus, settings)

    def test_unreadable_note_skipped(self, corpus, settings, updater):
        state = _build(corpus, settings)
        delta = updater.create(state, "ghost.md")
        assert delta.report.skipped
        assert "ghost" not in state.notes


# ─────────────────────────────────────────────────────────────────────────────
# Edit
# ─────────────────────────────────────────────────────────────────────────────


class TestEdit:
    def test_only_changed_edges_move(self, write_note, corpus, settings, updater):
        write_note("a.md", "[[b]]\n[[c]]")
        write_note("b.md")
        write_note("c.md")
        write_note("d.md")
        state = _build(corpus, settings)
        untouched = state.incoming["b"]

        write_note("a.md", "[[b]]\n[[d]]")
        delta = updater.edit(state, "a.md")

        assert state.incoming["b"] is untouched
        assert "c" not in state.incoming
        assert {e.source_id for e in state.incoming["d"]} == {"a"}
        assert delta.touched == {"a", "c", "d"}
        _assert_matches_rebuild(state, corpus, settings)

    def test_resolved_to_placeholder(self, write_note, corpus, settings, updater):
        write_note("a.md", "[[b]]")
        write_note("b.md")
        state = _build(corpus, settings)

        write_note("a.md", "[[b]] [[later]]")
        updater.apply(state, NoteEdited(path="a.md"))

        assert [e.source_id for e in state.placeholders["later"]] == ["a"]
        _assert_matches_rebuild(state, corpus, settings)

    def test_unchanged_content_is_noop(self, write_note, corpus, settings, updater):
        write_note("a.md", "[[b]]")
        state = _build(corpus, settings)
        before = state.clone()
        delta = updater.edit(state, "a.md")
        assert delta.touched == set()
        assert state == before

    def test_unknown_note_is_created(self, write_note, corpus, settings, updater):
        state = _build(corpus, settings)
        write_note("new.md", "[[x]]")
        delta = updater.edit(state, "new.md")
        assert delta.report.event == "create"
        assert "new" in state.notes
        _assert_matches_rebuild(state, corpus, settings)

    def test_newer_mtime_flips_most_recent_winner(self, write_note, corpus, settings, updater):
        write_note("x/proj.md", "", mtime=1_000)
        write_note("y/proj.md", "", mtime=2_000)
        write_note("c.md", "[[proj]]")
        state = _build(corpus, settings)
        assert next(iter(state.outgoing["c"])).target_id == "y/proj"

        write_note("x/proj.md", "edited", mtime=3_000)
        delta = updater.edit(state, "x/proj.md")

        assert next(iter(state.outgoing["c"])).target_id == "x/proj"
        assert delta.report.reresolved == ["c"]
        _assert_matches_rebuild(state, corpus, settings)

    def test_shadowed_sibling_edit_skipped(self, write_note, corpus, settings, updater):
        write_note("a.md", "")
        write_note("a.txt", "[[x]]")
        state = _build(corpus, settings)
        write_note("a.txt", "[[y]]")
        assert updater.edit(state, "a.txt").report.skipped
        _assert_matches_rebuild(state, corpus, settings)


# ─────────────────────────────────────────────────────────────────────────────
# Delete
# ─────────────────────────────────────────────────────────────────────────────


class TestDelete:
    def test_backlinks_demoted_to_placeholder(self, scenario_a, notes_root, corpus, settings, updater):
        """Scenario A then Delete(b): a's edge becomes placeholder "b"."""
        state = _build(corpus, settings)
        (notes_root / "b.md").unlink()
        delta = updater.apply(state, NoteDeleted(path="b.md"))

        assert "b" not in state.notes
        assert "a" not in state.outgoing
        (edge,) = state.placeholders["b"]
        assert edge.source_id == "a"
        assert delta.report.demoted == 1
        assert delta.report.reresolved == ["a"]
        _assert_matches_rebuild(state, corpus, settings)

    def test_falls_back_to_other_candidate(self, write_note, notes_root, corpus, settings, updater):
        write_note("x/proj.md")
        write_note("y/proj.md")
        write_note("x/c.md", "[[proj]]")
        state = _build(corpus, settings)

        (notes_root / "x/proj.md").unlink()
        delta = updater.delete(state, "x/proj.md")

        (edge,) = state.outgoing["x/c"]
        assert edge.target_id == "y/proj"
        assert not edge.is_ambiguous
        assert delta.report.demoted == 0
        _assert_matches_rebuild(state, corpus, settings)

    def test_path_hinted_backlink_grouped_by_basename(self, write_note, notes_root, corpus, settings, updater):
        write_note("x/b.md")
        write_note("a.md", "see [[x/b]]")
        write_note("c.md", "and [[B]]")
        state = _build(corpus, settings)

        (notes_root / "x/b.md").unlink()
        delta = updater.delete(state, "x/b.md")

        assert sorted(state.placeholders) == ["b"]
        edges = sorted(state.placeholders["b"], key=lambda e: e.source_id)
        assert [(e.source_id, e.path_hint) for e in edges] == [("a", "x/b"), ("c", None)]
        assert delta.report.demoted == 2
        _assert_matches_rebuild(state, corpus, settings)

    def test_outgoing_edges_removed(self, write_note, notes_root, corpus, settings, updater):
        write_note("a.md", "[[b]] [[nowhere]]")
        write_note("b.md")
        state = _build(corpus, settings)
        (notes_root / "a.md").unlink()
        updater.delete(state, "a.md")
        assert "b" not in state.incoming
        assert "nowhere" not in state.placeholders
        _assert_matches_rebuild(state, corpus, settings)

    def test_sibling_takes_over_note_id(self, write_note, notes_root, corpus, settings, updater):
        write_note("a.md", "[[one]]")
        write_note("a.txt", "[[two]]")
        write_note("c.md", "[[a]]")
        state = _build(corpus, settings)

        (notes_root / "a.md").unlink()
        updater.delete(state, "a.md")

        assert state.notes["a"].path == "a.txt"
        assert set(state.placeholders) == {"two"}
        assert {e.source_id for e in state.incoming["a"]} == {"c"}
        _assert_matches_rebuild(state, corpus, settings)

    def test_unknown_note_skipped(self, corpus, settings, updater):
        state = _build(corpus, settings)
        assert updater.delete(state, "nope.md").report.skipped


# ─────────────────────────────────────────────────────────────────────────────
# Rename
# ─────────────────────────────────────────────────────────────────────────────


class TestRename:
    def test_rewrites_referencing_note(self, scenario_a, notes_root, corpus, settings, updater):
        """Scenario A then Rename(b -> bb): a's text becomes [[bb]]."""
        state = _build(corpus, settings)
        _move(notes_root, "b.md", "bb.md")
        delta = updater.apply(state, NoteRenamed(old_path="b.md", new_path="bb.md"))

        assert _text(notes_root, "a.md") == "see [[bb]]"
        assert [e.source_id for e in state.incoming["bb"]] == ["a"]
        assert "b" not in state.notes
        assert "b" not in state.placeholders
        assert delta.report.rewritten == ["a"]
        assert delta.report.ok
        _assert_matches_rebuild(state, corpus, settings)

    def test_round_trip_restores_text(self, write_note, notes_root, corpus, settings, updater):
        original = "intro [[b#Part 2|the sequel]] and ![[b]]\n"
        write_note("a.md", original)
        write_note("b.md", "self [[b]]")
        state = _build(corpus, settings)

        _move(notes_root, "b.md", "bb.md")
        updater.rename(state, "b.md", "bb.md")
        assert _text(notes_root, "a.md") == "intro [[bb#Part 2|the sequel]] and ![[bb]]\n"
        assert _text(notes_root, "bb.md") == "self [[bb]]"

        _move(notes_root, "bb.md", "b.md")
        updater.rename(state, "bb.md", "b.md")
        assert _text(notes_root, "a.md") == original
        assert _text(notes_root, "b.md") == "self [[b]]"
        _assert_matches_rebuild(state, corpus, settings)

    def test_round_trip_keeps_partial_path_hint(self, write_note, notes_root, corpus, settings, updater):
        write_note("area/sub/b.md")
        write_note("a.md", "see [[sub/b]]")
        state = _build(corpus, settings)

        _move(notes_root, "area/sub/b.md", "area/sub/bb.md")
        updater.rename(state, "area/sub/b.md", "area/sub/bb.md")
        assert _text(notes_root, "a.md") == "see [[sub/bb]]"
        assert [e.source_id for e in state.incoming["area/sub/bb"]] == ["a"]

        _move(notes_root, "area/sub/bb.md", "area/sub/b.md")
        updater.rename(state, "area/sub/bb.md", "area/sub/b.md")
        assert _text(notes_root, "a.md") == "see [[sub/b]]"
        _assert_matches_rebuild(state, corpus, settings)

    def test_round_trip_keeps_typed_case(self, write_note, notes_root, corpus, settings, updater):
        write_note("b.md")
        write_note("a.md", "see [[B]] and [[b]]")
        state = _build(corpus, settings)

        _move(notes_root, "b.md", "bb.md")
        updater.rename(state, "b.md", "bb.md")
        assert _text(notes_root, "a.md") == "see [[BB]] and [[bb]]"

        _move(notes_root, "bb.md", "b.md")
        updater.rename(state, "bb.md", "b.md")
        assert _text(notes_root, "a.md") == "see [[B]] and [[b]]"
        _assert_matches_rebuild(state, corpus, settings)

    def test_title_case_carried_over(self, write_note, notes_root, corpus, settings, updater):
        write_note("project plan.md")
        write_note("a.md", "[[Project Plan#Goals]]")
        state = _build(corpus, settings)

        _move(notes_root, "project plan.md", "roadmap.md")
        updater.rename(state, "project plan.md", "roadmap.md")

        assert _text(notes_root, "a.md") == "[[Roadmap#Goals]]"
        _assert_matches_rebuild(state, corpus, settings)

    def test_relative_hint_kept_when_it_still_resolves(self, write_note, notes_root, corpus, settings, updater):
        write_note("x/proj.md")
        write_note("x/a.md", "[[./proj]]")
        state = _build(corpus, settings)

        _move(notes_root, "x/proj.md", "x/plan.md")
        updater.rename(state, "x/proj.md", "x/plan.md")

        assert _text(notes_root, "x/a.md") == "[[./plan]]"
        _assert_matches_rebuild(state, corpus, settings)

    def test_move_to_folder_keeps_bare_name(self, scenario_a, notes_root, corpus, settings, updater):
        state = _build(corpus, settings)
        _move(notes_root, "b.md", "archive/b.md")
        updater.rename(state, "b.md", "archive/b.md")
        assert _text(notes_root, "a.md") == "see [[b]]"
        assert [e.source_id for e in state.incoming["archive/b"]] == ["a"]
        _assert_matches_rebuild(state, corpus, settings)

    def test_full_id_written_when_bare_name_would_miss(self, write_note, notes_root, corpus, settings, updater):
        write_note("x/proj.md")
        write_note("b.md")
        write_note("x/a.md", "[[b]]")
        state = _build(corpus, settings)

        # From folder x, bare [[proj]] would pick x/proj
        _move(notes_root, "b.md", "z/proj.md")
        updater.rename(state, "b.md", "z/proj.md")

        assert _text(notes_root, "x/a.md") == "[[z/proj]]"
        assert [e.source_id for e in state.incoming["z/proj"]] == ["x/a"]
        _assert_matches_rebuild(state, corpus, settings)

    def test_path_hint_and_extension(self, write_note, notes_root, corpus, settings, updater):
        write_note("docs/b.md")
        write_note("a.md", "[[docs/b]] [[b.md]]")
        state = _build(corpus, settings)

        _move(notes_root, "docs/b.md", "guides/c.md")
        updater.rename(state, "docs/b.md", "guides/c.md")

        assert _text(notes_root, "a.md") == "[[guides/c]] [[c.md]]"
        _assert_matches_rebuild(state, corpus, settings)

    def test_unrelated_references_untouched(self, write_note, notes_root, corpus, settings, updater):
        write_note("x/b.md")
        write_note("y/b.md")
        write_note("x/a.md", "[[b]] [[y/b]]")
        state = _build(corpus, settings)

        _move(notes_root, "y/b.md", "y/c.md")
        updater.rename(state, "y/b.md", "y/c.md")

        assert _text(notes_root, "x/a.md") == "[[b]] [[y/c]]"
        _assert_matches_rebuild(state, corpus, settings)

    def test_write_failure_reported(self, write_note, notes_root, corpus, settings, updater, monkeypatch):
        write_note("a.md", "see [[b]]")
        write_note("c.md", "also [[b]]")
        write_note("b.md")
        state = _build(corpus, settings)
        real_write = corpus.write_text

        def failing_write(path, text):
            if path == "a.md":
                raise PermissionError("read-only file")
            real_write(path, text)

        monkeypatch.setattr(corpus, "write_text", failing_write)
        _move(notes_root, "b.md", "bb.md")
        delta = updater.rename(state, "b.md", "bb.md")

        assert not delta.report.ok
        (failure,) = delta.report.failures
        assert failure.note_id == "a"
        assert failure.path == "a.md"
        assert "read-only" in failure.reason
        assert delta.report.rewritten == ["c"]

        assert _text(notes_root, "a.md") == "see [[b]]"
        assert [e.source_id for e in state.placeholders["b"]] == ["a"]
        assert [e.source_id for e in state.incoming["bb"]] == ["c"]
        _assert_matches_rebuild(state, corpus, settings)

    def test_without_rewrite(self, scenario_a, notes_root, corpus, settings, updater):
        state = _build(corpus, settings)
        _move(notes_root, "b.md", "bb.md")
        delta = updater.apply(state, NoteRenamed(old_path="b.md", new_path="bb.md", rewrite_links=False))
        assert _text(notes_root, "a.md") == "see [[b]]"
        assert "b" in state.placeholders
        assert delta.report.rewritten == []
        _assert_matches_rebuild(state, corpus, settings)

    def test_rename_onto_placeholder_promotes(self, write_note, notes_root, corpus, settings, updater):
        write_note("a.md", "[[wanted]]")
        write_note("draft.md")
        state = _build(corpus, settings)
        _move(notes_root, "draft.md", "wanted.md")
        delta = updater.rename(state, "draft.md", "wanted.md")
        assert "wanted" not in state.placeholders
        assert delta.report.promoted == 1
        _assert_matches_rebuild(state, corpus, settings)

    def test_unknown_old_note_is_created(self, write_note, corpus, settings, updater):
        state = _build(corpus, settings)
        write_note("fresh.md", "[[x]]")
        delta = updater.rename(state, "gone.md", "fresh.md")
        assert delta.report.event == "rename"
        assert "fresh" in state.notes
        _assert_matches_rebuild(state, corpus, settings)

    def test_rename_to_non_note_deletes(self, scenario_a, notes_root, corpus, settings, updater):
        state = _build(corpus, settings)
        _move(notes_root, "b.md", "b.bak")
        updater.rename(state, "b.md", "b.bak")
        assert "b" not in state.notes
        assert "b" in state.placeholders
        _assert_matches_rebuild(state, corpus, settings)


def test_unsupported_event(updater, corpus, settings):
    with pytest.raises(TypeError):
        updater.apply(_build(corpus, settings), object())
