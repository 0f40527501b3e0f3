#!/usr/bin/env python3
"""
notegraph: CLI for the wiki-link index

Usage:
    notegraph links proj                # Outgoing links of a note
    notegraph backlinks proj            # Notes linking to a note
    notegraph placeholders              # Unresolved targets
    notegraph orphans                   # Notes without connections
    notegraph resolve "proj#Intro"      # What a link would point at
    notegraph rename a.md b.md          # Move a note, rewrite links
    notegraph watch                     # Keep the index live
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path, PurePosixPath
from typing import Any, NoReturn

import click

from . import __version__ as NOTEGRAPH_VERSION


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


# ─────────────────────────────────────────────────────────────────────────────
# Output Formatting
# ─────────────────────────────────────────────────────────────────────────────


def format_table(rows: list[dict], columns: list[str], max_widths: dict | None = None) -> str:
    """Format rows as a simple table."""
    if not rows:
        return ""

    max_widths = max_widths or {}
    widths = {col: len(col) for col in columns}

    def cell(row: dict, col: str) -> str:
        val = str(row.get(col, ""))
        limit = max_widths.get(col, 50)
        if len(val) > limit:
            val = val[: limit - 3] + "..."
        return val

    for row in rows:
        for col in columns:
            widths[col] = max(widths[col], len(cell(row, col)))

    header = "  ".join(col.upper().ljust(widths[col]) for col in columns)
    separator = "  ".join("-" * widths[col] for col in columns)

    lines = [header, separator]
    for row in rows:
        lines.append("  ".join(cell(row, col).ljust(widths[col]) for col in columns).rstrip())

    return "\n".join(lines)


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _link_row(edge: Any, *, source: bool) -> dict:
    target = edge.target_id or f"{edge.path_hint or edge.unresolved} (unresolved)"
    if edge.section:
        target += f"#{edge.section}"
    row = {
        "line": edge.line_number,
        "kind": edge.kind,
        "context": edge.context,
    }
    if source:
        row["source"] = edge.source_id
    else:
        row["target"] = target
    if edge.is_ambiguous:
        row["candidates"] = ", ".join(edge.candidates)
    return row


# ─────────────────────────────────────────────────────────────────────────────
# Store helpers
# ─────────────────────────────────────────────────────────────────────────────


def _load_config(ctx: click.Context):
    from .config import ConfigurationError, load_config

    try:
        return load_config(ctx.obj.get("notes_root"))
    except ConfigurationError as e:
        _fail(str(e))


def _open_store(ctx: click.Context):
    from .store import IndexStore

    return IndexStore.from_config(_load_config(ctx))


def _require_note(store, note_id: str) -> str:
    from .errors import NoteNotFoundError

    try:
        return store.get_note(note_id).id
    except NoteNotFoundError as e:
        _fail(str(e))


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=NOTEGRAPH_VERSION, prog_name="notegraph")
@click.option(
    "--notes-root",
    "notes_root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Notes directory (default: NOTEGRAPH_NOTES_ROOT or .notegraph.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, notes_root: Path | None):
    """notegraph: wiki-link resolution and backlink index.

    \b
    Query the graph:
      notegraph links proj            # [[links]] written in proj
      notegraph backlinks proj        # Notes that link to proj
      notegraph placeholders          # Targets with no note yet
      notegraph orphans               # Notes with no connections
      notegraph resolve "x/proj"      # Resolve link text

    \b
    Change the corpus:
      notegraph rename a.md dir/b.md  # Move and rewrite references
      notegraph watch                 # Apply file changes as they happen

    \b
    Maintenance:
      notegraph check                 # Verify index invariants
      notegraph stats                 # Counts
    """
    ctx.ensure_object(dict)
    ctx.obj["notes_root"] = notes_root


# ─────────────────────────────────────────────────────────────────────────────
# Query Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("note")
@click.option("--unresolved", "-u", "include_unresolved", is_flag=True, help="Include placeholder links")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def links(ctx: click.Context, note: str, include_unresolved: bool, as_json: bool):
    """Show links written in NOTE."""

    async def _run():
        async with _open_store(ctx) as store:
            note_id = _require_note(store, note)
            return note_id, store.get_outgoing_links(note_id, include_unresolved=include_unresolved)

    note_id, edges = run_async(_run())

    if as_json:
        output([e.model_dump(mode="json") for e in edges], as_json=True)
        return

    if not edges:
        click.echo(f"No links in {note_id}")
        return
    rows = [_link_row(e, source=False) for e in edges]
    columns = ["line", "kind", "target", "context"]
    if any("candidates" in r for r in rows):
        columns.append("candidates")
    click.echo(format_table(rows, columns, {"target": 40, "context": 60}))


@cli.command()
@click.argument("note")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def backlinks(ctx: click.Context, note: str, as_json: bool):
    """Show notes linking to NOTE."""

    async def _run():
        async with _open_store(ctx) as store:
            note_id = _require_note(store, note)
            return note_id, store.get_backlinks(note_id)

    note_id, edges = run_async(_run())

    if as_json:
        output([e.model_dump(mode="json") for e in edges], as_json=True)
        return

    if not edges:
        click.echo(f"No backlinks to {note_id}")
        return
    rows = [_link_row(e, source=True) for e in edges]
    click.echo(format_table(rows, ["source", "line", "kind", "context"], {"source": 40, "context": 60}))


@cli.command()
@click.option("--note", "note", help="Only placeholders written in this note")
@click.option("--counts", is_flag=True, help="Show reference counts per target")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def placeholders(ctx: click.Context, note: str | None, counts: bool, as_json: bool):
    """List link targets that do not exist yet."""

    async def _run():
        async with _open_store(ctx) as store:
            if note:
                note_id = _require_note(store, note)
                return store.get_placeholders_in_note(note_id)
            if counts:
                return store.get_placeholder_counts()
            return store.get_placeholders()

    result = run_async(_run())

    if counts and not note:
        if as_json:
            output(result, as_json=True)
        elif result:
            rows = [{"target": name, "refs": count} for name, count in result.items()]
            click.echo(format_table(rows, ["target", "refs"]))
        else:
            click.echo("No placeholders")
        return

    if note:
        if as_json:
            output([e.model_dump(mode="json") for e in result], as_json=True)
        elif result:
            rows = [{"line": e.line_number, "target": e.unresolved, "context": e.context} for e in result]
            click.echo(format_table(rows, ["line", "target", "context"], {"context": 60}))
        else:
            click.echo("No placeholders")
        return

    if as_json:
        output([g.model_dump(mode="json") for g in result], as_json=True)
        return

    if not result:
        click.echo("No placeholders")
        return
    rows = [
        {"target": group.target, "source": ref.source_id, "line": ref.line_number}
        for group in result
        for ref in group.refs
    ]
    click.echo(format_table(rows, ["target", "source", "line"], {"target": 40, "source": 40}))


@cli.command()
@click.option(
    "--kind",
    type=click.Choice(["isolated", "source_only", "sink_only"]),
    help="Only show one kind of orphan",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def orphans(ctx: click.Context, kind: str | None, as_json: bool):
    """List notes without incoming or outgoing links."""

    async def _run():
        async with _open_store(ctx) as store:
            return store.get_orphans()

    report = run_async(_run())
    data = report.model_dump()
    if kind:
        data = {kind: data[kind]}

    if as_json:
        output(data, as_json=True)
        return

    rows = [{"note": note_id, "kind": name} for name, ids in data.items() for note_id in ids]
    if not rows:
        click.echo("No orphans")
        return
    click.echo(format_table(rows, ["note", "kind"], {"note": 60}))


@cli.command()
@click.argument("text")
@click.option("--from", "from_note", default="", help="Resolve as if written in this note")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def resolve(ctx: click.Context, text: str, from_note: str, as_json: bool):
    """Show which note link TEXT resolves to."""

    async def _run():
        async with _open_store(ctx) as store:
            source_id = _require_note(store, from_note) if from_note else ""
            return store.resolve(text, source_id)

    resolution = run_async(_run())

    if as_json:
        output(resolution.model_dump(), as_json=True)
        return

    if resolution.match == "attachment":
        click.echo("Attachment (not indexed)")
    elif not resolution.resolved:
        click.echo(f"Unresolved: placeholder '{resolution.placeholder}'")
    else:
        click.echo(resolution.winner)
        if resolution.ambiguous:
            click.echo(f"Ambiguous: {', '.join(resolution.candidates)}", err=True)
    if not resolution.resolved:
        sys.exit(1)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool):
    """Show index counts."""

    async def _run():
        async with _open_store(ctx) as store:
            return store.stats()

    result = run_async(_run())
    data = result.model_dump()
    if as_json:
        output(data, as_json=True)
        return
    for key, value in data.items():
        click.echo(f"{key.replace('_', ' ').capitalize() + ':':<18} {value}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def check(ctx: click.Context, as_json: bool):
    """Build the index and verify its invariants."""

    async def _run():
        store = _open_store(ctx)
        # Build without the built-in check so problems are reported, not raised
        store.verify_invariants = False
        async with store:
            return store.stats(), store.check()

    result, problems = run_async(_run())

    if as_json:
        output({"ok": not problems, "notes": result.notes, "problems": problems}, as_json=True)
    elif problems:
        click.echo(f"{len(problems)} problem(s) found:", err=True)
        for problem in problems:
            click.echo(f"  - {problem}", err=True)
    else:
        click.echo(f"OK: {result.notes} notes, {result.resolved_edges} links, {result.placeholders} placeholders")

    if problems:
        sys.exit(1)


# ─────────────────────────────────────────────────────────────────────────────
# Mutating Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("old_path")
@click.argument("new_path")
@click.option("--no-rewrite", "no_rewrite", is_flag=True, help="Move the file without rewriting links")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def rename(ctx: click.Context, old_path: str, new_path: str, no_rewrite: bool, as_json: bool):
    """Move OLD_PATH to NEW_PATH and rewrite links that pointed at it.

    Paths are relative to the notes root. When NEW_PATH has no extension,
    the old file's extension is kept.

    \b
    Examples:
      notegraph rename proj.md projects/proj.md
      notegraph rename drafts/idea ideas/idea
    """
    from .models import NoteRenamed

    config = _load_config(ctx)
    old_rel = PurePosixPath(old_path.replace("\\", "/"))
    new_rel = PurePosixPath(new_path.replace("\\", "/"))
    if not old_rel.suffix:
        old_rel = old_rel.with_suffix(config.default_extension)
    if new_rel.suffix.lower() not in config.extensions:
        new_rel = PurePosixPath(f"{new_rel}{old_rel.suffix}")

    source = config.notes_root / old_rel
    target = config.notes_root / new_rel
    if not source.is_file():
        _fail(f"No such note: {old_rel}")
    if target.exists():
        _fail(f"Target already exists: {new_rel}")

    async def _run():
        from .store import IndexStore

        async with IndexStore.from_config(config) as store:
            target.parent.mkdir(parents=True, exist_ok=True)
            source.rename(target)
            return await store.apply_delta(
                NoteRenamed(old_path=str(old_rel), new_path=str(new_rel), rewrite_links=not no_rewrite)
            )

    report = run_async(_run())

    if as_json:
        output(report.model_dump(), as_json=True)
    else:
        click.echo(f"Moved {old_rel} -> {new_rel}")
        if report.rewritten:
            click.echo(f"Rewrote links in {len(report.rewritten)} note(s):")
            for note_id in report.rewritten:
                click.echo(f"  {note_id}")
        for failure in report.failures:
            click.echo(f"Could not rewrite {failure.path}: {failure.reason}", err=True)

    if not report.ok:
        sys.exit(1)


@cli.command()
@click.option("--debounce", type=float, help="Seconds to wait for changes to settle")
@click.pass_context
def watch(ctx: click.Context, debounce: float | None):
    """Keep the index live while files change. Stop with Ctrl-C."""
    from .watcher import CorpusWatcher

    config = _load_config(ctx)

    async def _run():
        from .store import IndexStore

        async with IndexStore.from_config(config) as store:
            stats = store.stats()
            click.echo(f"Indexed {stats.notes} notes; watching {config.notes_root}", err=True)
            with CorpusWatcher(store, debounce_seconds=debounce if debounce is not None else config.debounce_seconds):
                await asyncio.Event().wait()

    try:
        run_async(_run())
    except KeyboardInterrupt:
        click.echo("Stopped", err=True)


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def main():
    """Entry point for notegraph CLI."""
    from ._logging import configure_logging

    configure_logging()
    cli()


if __name__ == "__main__":
    main()
