"""Wiki-link and embed extraction.

Recognised forms, per occurrence:

    ![[target]]          embed
    [[target]]           link
    target = name[#section][|label]

`name` is either a bare basename or a path hint containing "/". Tokens never
span lines and never contain brackets, so unterminated or nested brackets
are left as literal text.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import PurePosixPath

from ..config import DEFAULT_ATTACHMENT_EXTENSIONS, DEFAULT_CONTEXT_RADIUS, DEFAULT_NOTE_EXTENSIONS
from ..models import RawReference, TargetSpec

# "!" is tried first at each position, so "![[x]]" is an embed rather than
# a "!" followed by a link.
REFERENCE_PATTERN = re.compile(r"(?P<bang>!?)\[\[(?P<inner>[^\[\]\n]*)\]\]")

_DEFAULT_KNOWN_EXTENSIONS = frozenset(DEFAULT_NOTE_EXTENSIONS + DEFAULT_ATTACHMENT_EXTENSIONS)


def normalize_name(name: str) -> str:
    """Placeholder grouping key: trimmed and lower-cased."""
    return name.strip().lower()


def basename_of(note_id: str) -> str:
    return note_id.rsplit("/", 1)[-1]


def folder_of(note_id: str) -> str:
    return note_id.rsplit("/", 1)[0] if "/" in note_id else ""


def note_id_for_path(path: str) -> str:
    """NoteId for a corpus-relative file path: posix path minus extension."""
    posix = PurePosixPath(path.replace("\\", "/").strip("/"))
    return str(posix.with_suffix("")) if posix.suffix else str(posix)


def _split_target(raw_name: str, known_extensions: frozenset[str]) -> tuple[str, str | None, str | None]:
    """Split a typed target name into (basename, path hint, extension).

    Args:
        raw_name: Stripped name as typed, e.g. "folder/Note.md".
        known_extensions: Suffixes treated as extensions. Anything else stays
            part of the name ("v1.2 notes" keeps its dot).
    """
    cleaned = raw_name.replace("\\", "/")
    # Keep "./" and "../" prefixes intact for relative hints
    if not cleaned.startswith("."):
        cleaned = cleaned.lstrip("/")
    cleaned = cleaned.rstrip("/")

    extension = None
    suffix = PurePosixPath(cleaned).suffix.lower() if cleaned else ""
    if suffix and suffix in known_extensions:
        extension = cleaned[-len(suffix):]
        cleaned = cleaned[: -len(suffix)]

    if "/" in cleaned:
        return basename_of(cleaned), cleaned, extension
    return cleaned, None, extension


def parse_references(
    text: str,
    source_id: str,
    *,
    context_radius: int = DEFAULT_CONTEXT_RADIUS,
    known_extensions: Iterable[str] | None = None,
) -> list[RawReference]:
    """Extract every link and embed from a note's text.

    Parsing is pure: the same text always yields the same list, whatever the
    state of the corpus.

    Args:
        text: Full note content.
        source_id: NoteId of the note being parsed.
        context_radius: Characters kept on each side of the token (within its line).
        known_extensions: Suffixes stripped from target names. Defaults to the
            configured note and attachment extensions.

    Returns:
        References in document order.
    """
    extensions = (
        frozenset(e.lower() for e in known_extensions)
        if known_extensions is not None
        else _DEFAULT_KNOWN_EXTENSIONS
    )
    references: list[RawReference] = []

    line_number = 1
    scanned_to = 0

    for match in REFERENCE_PATTERN.finditer(text):
        inner = match.group("inner")
        target_part, pipe, label = inner.partition("|")
        name_part, hash_, section = target_part.partition("#")

        stripped_name = name_part.strip()
        if not stripped_name:
            # [[]], [[#heading]] and [[|label]] are not cross-note references
            continue

        name, path_hint, extension = _split_target(stripped_name, extensions)
        if not name.strip(".").strip():
            # "[[.]]", "[[./]]" and "[[..]]" name a folder, not a note
            continue

        start = match.start()
        end = match.end()
        line_number += text.count("\n", scanned_to, start)
        scanned_to = start

        inner_start = match.start("inner")
        name_start = inner_start + (len(name_part) - len(name_part.lstrip()))
        name_end = name_start + len(stripped_name)

        line_start = text.rfind("\n", 0, start) + 1
        line_end = text.find("\n", end)
        if line_end == -1:
            line_end = len(text)
        context = text[max(line_start, start - context_radius) : min(line_end, end + context_radius)]

        references.append(
            RawReference(
                source_id=source_id,
                kind="embed" if match.group("bang") else "link",
                target=TargetSpec(
                    name=name,
                    path=path_hint,
                    section=(section.strip() or None) if hash_ else None,
                    extension=extension,
                ),
                display_label=(label.strip() or None) if pipe else None,
                line_number=line_number,
                context=context.strip(),
                start=start,
                end=end,
                name_start=name_start,
                name_end=name_end,
            )
        )

    return references


def rewrite_reference_names(text: str, replacements: Iterable[tuple[int, int, str]]) -> str:
    """Replace target-name spans in text.

    Only the name span of each reference is touched, so "#section", "|label"
    and any whitespace inside the brackets survive verbatim.

    Args:
        text: Note content the spans were computed from.
        replacements: (name_start, name_end, new_name) triples.

    Raises:
        ValueError: If spans overlap or fall outside the text.
    """
    ordered = sorted(replacements, key=lambda r: r[0])
    pieces: list[str] = []
    cursor = 0
    for start, end, new_name in ordered:
        if start < cursor or end < start or end > len(text):
            raise ValueError(f"Invalid rewrite span {start}:{end}")
        pieces.append(text[cursor:start])
        pieces.append(new_name)
        cursor = end
    pieces.append(text[cursor:])
    return "".join(pieces)
