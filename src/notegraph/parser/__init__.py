"""Reference parsing for wiki-style links and embeds."""

from .links import (
    REFERENCE_PATTERN,
    basename_of,
    folder_of,
    normalize_name,
    note_id_for_path,
    parse_references,
    rewrite_reference_names,
)

__all__ = [
    "REFERENCE_PATTERN",
    "basename_of",
    "folder_of",
    "normalize_name",
    "note_id_for_path",
    "parse_references",
    "rewrite_reference_names",
]
