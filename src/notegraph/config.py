"""Configuration management for notegraph.

This module contains all configurable constants for the link index.
Magic numbers are documented here rather than scattered throughout the codebase.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from .errors import NotegraphError

CONFIG_FILENAME = ".notegraph.yaml"


class ConfigurationError(NotegraphError):
    """Raised when required configuration is missing."""

    pass


# =============================================================================
# Corpus
# =============================================================================

# Extension used when a note is created without one.
DEFAULT_EXTENSION = ".md"

# Extensions treated as notes. Order matters: when two files share a stem
# (notes/a.md and notes/a.txt) the one whose extension comes first wins the
# NoteId and the other is skipped.
DEFAULT_NOTE_EXTENSIONS = (".md", ".txt")

# Targets with these extensions are attachments, not notes. They are parsed
# (so embeds of images are visible to callers) but never become edges or
# placeholders.
DEFAULT_ATTACHMENT_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".bmp", ".ico",
    ".pdf", ".drawio", ".excalidraw",
)


# =============================================================================
# Resolution
# =============================================================================

# Order in which name collisions are broken. Lexicographic path order is
# always applied last, whether listed or not, so the winner is deterministic.
DEFAULT_TIE_BREAK = ("same_folder", "most_recent", "lexicographic")


# =============================================================================
# Parsing
# =============================================================================

# Characters kept on each side of a reference for its context snippet.
# 40 fits a hover card line without wrapping.
DEFAULT_CONTEXT_RADIUS = 40


# =============================================================================
# Index maintenance
# =============================================================================

# Notes parsed between cooperative yields during a full rebuild. A smaller
# batch lets a superseding rebuild cancel the running one sooner.
DEFAULT_REBUILD_BATCH_SIZE = 64

# Debounce window for filesystem notifications before deltas are applied.
DEFAULT_DEBOUNCE_SECONDS = 1.0


class NotegraphConfig(BaseModel):
    """Settings for one workspace."""

    notes_root: Path
    default_extension: str = DEFAULT_EXTENSION
    extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_NOTE_EXTENSIONS))
    attachment_extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ATTACHMENT_EXTENSIONS)
    )
    tie_break: list[str] = Field(default_factory=lambda: list(DEFAULT_TIE_BREAK))
    context_radius: int = Field(default=DEFAULT_CONTEXT_RADIUS, ge=0)
    rebuild_batch_size: int = Field(default=DEFAULT_REBUILD_BATCH_SIZE, ge=1)
    verify_invariants: bool = True
    debounce_seconds: float = Field(default=DEFAULT_DEBOUNCE_SECONDS, ge=0)

    @field_validator("default_extension")
    @classmethod
    def _dotted_extension(cls, value: str) -> str:
        value = value.strip().lower()
        return value if value.startswith(".") else f".{value}"

    @field_validator("extensions", "attachment_extensions")
    @classmethod
    def _dotted_extensions(cls, values: list[str]) -> list[str]:
        normalized: list[str] = []
        for value in values:
            value = value.strip().lower()
            if not value:
                continue
            if not value.startswith("."):
                value = f".{value}"
            if value not in normalized:
                normalized.append(value)
        return normalized

    @field_validator("tie_break")
    @classmethod
    def _known_rules(cls, values: list[str]) -> list[str]:
        # Imported here to avoid a cycle (resolver imports config constants)
        from .resolver import TIE_BREAK_RULES

        unknown = [v for v in values if v not in TIE_BREAK_RULES]
        if unknown:
            raise ValueError(
                f"Unknown tie-break rule(s): {', '.join(unknown)}. "
                f"Valid rules: {', '.join(TIE_BREAK_RULES)}"
            )
        return values

    def model_post_init(self, __context) -> None:
        # The default extension must always count as a note extension
        if self.default_extension not in self.extensions:
            self.extensions.insert(0, self.default_extension)


def _discover_project_config(start_dir: Path | None = None, max_depth: int = 10) -> tuple[Path, dict] | None:
    """Walk up from start_dir looking for .notegraph.yaml.

    Args:
        start_dir: Directory to start from (defaults to cwd)
        max_depth: Maximum directories to traverse up

    Returns:
        Tuple of (config_path, data) if found, None otherwise.
    """
    current = Path(start_dir or os.getcwd()).resolve()

    for _ in range(max_depth):
        config_file = current / CONFIG_FILENAME
        if config_file.exists():
            try:
                data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            except (OSError, yaml.YAMLError):
                data = None
            if isinstance(data, dict):
                return config_file, data

        parent = current.parent
        if parent == current:  # Reached filesystem root
            break
        current = parent

    return None


def load_config(notes_root: Path | str | None = None, start_dir: Path | None = None) -> NotegraphConfig:
    """Load workspace configuration.

    Discovery order for the notes root:
    1. The notes_root argument (explicit override, used by the CLI option)
    2. NOTEGRAPH_NOTES_ROOT environment variable
    3. notes_path in the nearest .notegraph.yaml, relative to that file
    4. Error with helpful message

    Other settings always come from the discovered .notegraph.yaml when present.

    Raises:
        ConfigurationError: If no notes root can be found or settings are invalid.
    """
    discovered = _discover_project_config(start_dir)
    data: dict = {}
    config_dir: Path | None = None
    if discovered:
        config_path, data = discovered
        data = dict(data)
        config_dir = config_path.parent

    root: Path | None = None
    if notes_root is not None:
        root = Path(notes_root)
    elif os.environ.get("NOTEGRAPH_NOTES_ROOT"):
        root = Path(os.environ["NOTEGRAPH_NOTES_ROOT"])
    elif config_dir is not None and data.get("notes_path"):
        root = (config_dir / str(data["notes_path"])).resolve()

    if root is None:
        raise ConfigurationError(
            "No notes root configured. Options:\n"
            "  1. Pass --notes-root to the command\n"
            "  2. Set NOTEGRAPH_NOTES_ROOT to your notes directory\n"
            f"  3. Add notes_path to a {CONFIG_FILENAME} in this project"
        )

    if not root.exists() or not root.is_dir():
        raise ConfigurationError(f"Notes root does not exist or is not a directory: {root}")

    data.pop("notes_path", None)
    data["notes_root"] = root
    try:
        return NotegraphConfig.model_validate(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {CONFIG_FILENAME}: {e}") from e
