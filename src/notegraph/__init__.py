"""Wiki-link resolution and backlink index for plain-text notes."""

__version__ = "0.1.0"

from .config import ConfigurationError, NotegraphConfig, load_config
from .corpus import FileSystemCorpus, NoteDocument
from .errors import IndexInvariantViolation, NotegraphError, NoteNotFoundError
from .index import IndexSettings, IndexSnapshot, build_index, check_invariants
from .models import (
    DeltaReport,
    NoteCreated,
    NoteDeleted,
    NoteEdited,
    NoteRenamed,
    OrphanReport,
    PlaceholderGroup,
    Resolution,
    ResolvedLink,
)
from .resolver import Resolver, TieBreakPolicy
from .store import IndexStore

__all__ = [
    "__version__",
    "ConfigurationError",
    "DeltaReport",
    "FileSystemCorpus",
    "IndexInvariantViolation",
    "IndexSettings",
    "IndexSnapshot",
    "IndexStore",
    "NoteCreated",
    "NoteDeleted",
    "NoteDocument",
    "NoteEdited",
    "NoteNotFoundError",
    "NoteRenamed",
    "NotegraphConfig",
    "NotegraphError",
    "OrphanReport",
    "PlaceholderGroup",
    "Resolution",
    "ResolvedLink",
    "Resolver",
    "TieBreakPolicy",
    "build_index",
    "check_invariants",
    "load_config",
]
