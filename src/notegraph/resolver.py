"""Reference resolution against the set of known notes.

Resolution order:
1. Path hint (target contains "/"): exact id, then case-insensitive id,
   then notes whose id ends with the hint. "./" and "../" hints are
   resolved against the source note's folder first.
2. Bare name: notes whose basename matches exactly, falling back to a
   case-insensitive basename match.
3. Several candidates: the tie-break policy picks one winner. The full
   candidate list is still returned so callers can flag the ambiguity.

A section (#heading) never affects which note a reference resolves to.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence

from .config import DEFAULT_ATTACHMENT_EXTENSIONS, DEFAULT_TIE_BREAK
from .models import NoteRecord, RawReference, Resolution, ResolvedLink, TargetSpec
from .parser.links import basename_of, folder_of, normalize_name, parse_references

log = logging.getLogger(__name__)

# A rule narrows a candidate list. It receives the candidates and the source
# note's folder and must return a non-empty subset.
TieBreakRule = Callable[[list[NoteRecord], str], list[NoteRecord]]


def same_folder(candidates: list[NoteRecord], source_folder: str) -> list[NoteRecord]:
    """Prefer candidates living in the source note's folder."""
    same = [c for c in candidates if c.folder == source_folder]
    return same or candidates


def most_recent(candidates: list[NoteRecord], source_folder: str) -> list[NoteRecord]:
    """Prefer the most recently modified candidates."""
    newest = max(c.mtime for c in candidates)
    return [c for c in candidates if c.mtime == newest]


def lexicographic(candidates: list[NoteRecord], source_folder: str) -> list[NoteRecord]:
    """Pick the lexicographically smallest path."""
    return [min(candidates, key=lambda c: c.path)]


TIE_BREAK_RULES: dict[str, TieBreakRule] = {
    "same_folder": same_folder,
    "most_recent": most_recent,
    "lexicographic": lexicographic,
}


class TieBreakPolicy:
    """Ordered tie-break rules for name collisions.

    Rules are applied in order until one candidate remains. Lexicographic
    order is always the final rule so the outcome is deterministic whatever
    the configured list says.
    """

    def __init__(self, rules: Sequence[str | TieBreakRule] = DEFAULT_TIE_BREAK):
        self._rules: list[TieBreakRule] = []
        for rule in rules:
            if isinstance(rule, str):
                try:
                    rule = TIE_BREAK_RULES[rule]
                except KeyError:
                    raise ValueError(f"Unknown tie-break rule: {rule}") from None
            self._rules.append(rule)
        if not self._rules or self._rules[-1] is not lexicographic:
            self._rules.append(lexicographic)

    @property
    def rules(self) -> tuple[TieBreakRule, ...]:
        return tuple(self._rules)

    def choose(self, candidates: Sequence[NoteRecord], source_id: str) -> NoteRecord:
        if not candidates:
            raise ValueError("choose() needs at least one candidate")
        remaining = list(candidates)
        source_folder = folder_of(source_id)
        for rule in self._rules:
            if len(remaining) == 1:
                break
            remaining = rule(remaining, source_folder) or remaining
        return remaining[0]


def _join_relative(source_folder: str, hint: str) -> str | None:
    """Resolve a "./" or "../" hint against a folder. None if it escapes the root."""
    parts = source_folder.split("/") if source_folder else []
    for part in hint.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                return None
            parts.pop()
        else:
            parts.append(part)
    return "/".join(parts)


class Resolver:
    """Maps references to notes using a read-only view of the corpus.

    Args:
        notes: NoteId -> NoteRecord for every known note.
        basenames: normalized basename -> NoteIds sharing it.
        policy: Tie-break policy for name collisions.
        attachment_extensions: Target extensions that denote attachments.
    """

    def __init__(
        self,
        notes: Mapping[str, NoteRecord],
        basenames: Mapping[str, Iterable[str]],
        policy: TieBreakPolicy | None = None,
        attachment_extensions: Iterable[str] = DEFAULT_ATTACHMENT_EXTENSIONS,
    ):
        self._notes = notes
        self._basenames = basenames
        self.policy = policy or TieBreakPolicy()
        self._attachments = frozenset(e.lower() for e in attachment_extensions)

    def _by_basename(self, name: str) -> list[str]:
        return sorted(self._basenames.get(normalize_name(name), ()))

    def _pick(self, ids: list[str], source_id: str, match: str, placeholder: str) -> Resolution:
        records = [self._notes[i] for i in ids if i in self._notes]
        if not records:
            return Resolution(match="none", placeholder=placeholder)
        winner = self.policy.choose(records, source_id)
        candidates = sorted(r.id for r in records)
        if len(candidates) > 1:
            log.debug(
                "Ambiguous reference from %s resolved to %s (%d candidates)",
                source_id,
                winner.id,
                len(candidates),
            )
        return Resolution(winner=winner.id, candidates=candidates, match=match)

    def resolve_target(self, target: TargetSpec, source_id: str) -> Resolution:
        """Resolve a target spec as seen from source_id."""
        if target.extension and target.extension.lower() in self._attachments:
            return Resolution(match="attachment")

        if target.path is not None:
            return self._resolve_path(target, source_id)

        placeholder = normalize_name(target.name)
        ids = self._by_basename(target.name)
        exact = [i for i in ids if basename_of(i) == target.name]
        if exact:
            return self._pick(exact, source_id, "name", placeholder)
        if ids:
            return self._pick(ids, source_id, "name_casefold", placeholder)
        return Resolution(match="none", placeholder=placeholder)

    def _resolve_path(self, target: TargetSpec, source_id: str) -> Resolution:
        hint = target.path or ""
        # Unresolved path hints group with bare references to the same name
        placeholder = normalize_name(target.name)
        if hint.startswith("./") or hint.startswith("../"):
            joined = _join_relative(folder_of(source_id), hint)
            if joined is None:
                return Resolution(match="none", placeholder=placeholder)
            hint = joined

        if hint in self._notes:
            return Resolution(winner=hint, candidates=[hint], match="path")

        lowered = hint.lower()
        same_name = self._by_basename(basename_of(hint))
        folded = [i for i in same_name if i.lower() == lowered]
        if folded:
            return self._pick(folded, source_id, "path", placeholder)

        # Partial path: "sub/note" matches "area/sub/note"
        suffixed = [i for i in same_name if i.lower().endswith("/" + lowered)]
        if suffixed:
            return self._pick(suffixed, source_id, "path", placeholder)

        return Resolution(match="none", placeholder=placeholder)

    def resolve(self, reference: RawReference) -> Resolution:
        return self.resolve_target(reference.target, reference.source_id)

    def resolve_text(
        self,
        raw_target_text: str,
        source_id: str,
        known_extensions: Iterable[str] | None = None,
    ) -> Resolution:
        """Resolve typed text such as "proj", "x/proj#Intro" or "[[proj|P]]"."""
        text = raw_target_text.strip()
        if "[[" not in text:
            text = f"[[{text}]]"
        references = parse_references(text, source_id, known_extensions=known_extensions)
        if not references:
            return Resolution(match="none")
        return self.resolve(references[0])

    def link_for(self, reference: RawReference) -> ResolvedLink | None:
        """Build the index edge for a reference. None for attachments."""
        resolution = self.resolve(reference)
        if resolution.match == "attachment":
            return None
        return ResolvedLink(
            source_id=reference.source_id,
            target_id=resolution.winner,
            unresolved=None if resolution.resolved else resolution.placeholder,
            path_hint=reference.target.path,
            section=reference.target.section,
            kind=reference.kind,
            display_label=reference.display_label,
            line_number=reference.line_number,
            context=reference.context,
            start=reference.start,
            candidates=tuple(resolution.candidates) if resolution.ambiguous else (),
        )
