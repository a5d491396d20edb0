from __future__ import annotations

import hashlib
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, TypeVar

from pydantic import ValidationError

from . import artifacts
from .errors import CapsuleNotFoundError
from .models import (
    Artifact,
    Capsule,
    CapsuleFilter,
    CapsuleStatus,
    CapsuleType,
    Challenge,
    Confirmation,
    Origin,
    Significance,
    utc_now,
)
from .state_store import CAPSULES_FILENAME, CardHome, atomic_write_text, locked_file
from .tags import TagPrefix, matches_tag_query, normalize_tag, normalize_tags

logger = logging.getLogger(__name__)

EnumT = TypeVar("EnumT", bound=Enum)

QUICKFIX_SEED_PHASE = "quickfix-seed"

PHASE_RANKS: Mapping[str, int] = MappingProxyType(
    {
        QUICKFIX_SEED_PHASE: 0,
        "investigate": 1,
        "plan": 2,
        "review": 3,
        "execute": 4,
        "verify": 5,
        "conclude": 6,
        "simplify": 7,
        "record": 8,
    }
)

DOCUMENT_TITLE = "# Decision Capsules"

_DECISION_RE = re.compile(r"^###\s+Decision:\s*(.+)$", re.MULTILINE | re.IGNORECASE)
_SECTION_END_RE = re.compile(r"^##[^#]", re.MULTILINE)
_PHASE_SECTION_RE = re.compile(r"^## ([\w-]+)\s*$", re.MULTILINE)
_CHALLENGE_LABEL = "Challenge"


def phase_rank(phase: str) -> int:
    return PHASE_RANKS.get(phase, 0)


def generate_id(session_id: str, phase: str, question: str) -> str:
    """``<session>-<phase>-<8 hex>`` where the hex is the first 4 bytes of sha256(question)."""
    digest = hashlib.sha256(question.encode("utf-8")).hexdigest()[:8]
    return f"{session_id}-{phase}-{digest}"


@lru_cache(maxsize=64)
def _field_re(label: str) -> re.Pattern[str]:
    return re.compile(rf"[-*]\s*\*\*{re.escape(label)}:\*\*\s*(.+)$", re.MULTILINE | re.IGNORECASE)


def extract_field(block: str, label: str) -> str:
    """Value of the first ``- **Label:** value`` line in ``block``, or ``""``."""
    match = _field_re(label).search(block)
    return match.group(1).strip() if match else ""


def split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _enum_value(enum_cls: type[EnumT], raw: str, default: EnumT) -> EnumT:
    if not raw:
        return default
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        logger.warning("Unknown %s %r; using %s", enum_cls.__name__, raw, default.value)
        return default


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(raw: str) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable capsule timestamp %r", raw)
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _one_line(value: str) -> str:
    return " ".join(value.split())


def _decision_blocks(text: str) -> list[tuple[str, str]]:
    """Split ``text`` into ``(question, block)`` pairs.

    A block runs to the next decision heading; the last one stops at the next
    level-2 heading.
    """
    matches = list(_DECISION_RE.finditer(text))
    blocks: list[tuple[str, str]] = []
    for index, match in enumerate(matches):
        start = match.end()
        if index + 1 < len(matches):
            end = matches[index + 1].start()
        else:
            section_end = _SECTION_END_RE.search(text, start)
            end = section_end.start() if section_end else len(text)
        blocks.append((match.group(1).strip(), text[start:end]))
    return blocks


def extract_from_artifact(artifact: Artifact) -> list[Capsule]:
    """Read ``### Decision:`` blocks from an artifact body.

    Ids derive from (session, phase, question). A question repeated within
    the same artifact keeps its first block.
    """
    header = artifact.header
    created = header.timestamp or utc_now()
    capsules: dict[str, Capsule] = {}
    for question, block in _decision_blocks(artifact.body):
        capsule_id = generate_id(header.session, header.phase, question)
        if capsule_id in capsules:
            logger.warning("Duplicate decision %r in %s artifact; keeping the first", question, header.phase)
            continue
        alternatives = split_csv(extract_field(block, "Alternatives"))
        default_type = CapsuleType.DECISION if alternatives else CapsuleType.FINDING
        capsules[capsule_id] = Capsule(
            id=capsule_id,
            session_id=header.session,
            phase=header.phase,
            question=question,
            choice=extract_field(block, "Choice"),
            rationale=extract_field(block, "Rationale"),
            alternatives=alternatives,
            origin=_enum_value(Origin, extract_field(block, "Origin") or extract_field(block, "Source"), Origin.AGENT),
            status=_enum_value(CapsuleStatus, extract_field(block, "Status"), CapsuleStatus.HYPOTHESIS),
            type=_enum_value(CapsuleType, extract_field(block, "Type"), default_type),
            significance=_enum_value(
                Significance, extract_field(block, "Significance"), Significance.IMPLEMENTATION
            ),
            confirmation=_enum_value(Confirmation, extract_field(block, "Confirmation"), Confirmation.IMPLICIT),
            pattern_id=extract_field(block, "PatternID"),
            tags=split_csv(extract_field(block, "Tags")),
            repos=list(header.repos),
            timestamp=created,
            created_at=created,
        )
    return list(capsules.values())


# ---------------------------------------------------------------------------
# Consolidated document codec
# ---------------------------------------------------------------------------


def _section_order(phases: Iterable[str]) -> list[str]:
    known = sorted((phase for phase in phases if phase in PHASE_RANKS), key=phase_rank)
    unknown = sorted(phase for phase in phases if phase not in PHASE_RANKS)
    return known + unknown


def _encode_capsule(capsule: Capsule) -> list[str]:
    fields: list[tuple[str, str]] = [
        ("ID", capsule.id),
        ("Choice", capsule.choice),
        ("Alternatives", ", ".join(capsule.alternatives)),
        ("Rationale", capsule.rationale),
        ("Origin", capsule.origin.value),
        ("Status", capsule.status.value),
        ("Type", capsule.type.value),
        ("Significance", capsule.significance.value),
        ("Confirmation", capsule.confirmation.value),
        ("PatternID", capsule.pattern_id),
        ("Tags", ", ".join(capsule.tags)),
        ("Timestamp", _format_time(capsule.timestamp)),
        ("CreatedAt", _format_time(capsule.created_at)),
        ("InvalidatedAt", _format_time(capsule.invalidated_at) if capsule.invalidated_at else ""),
        ("Repos", ", ".join(capsule.repos)),
        ("Commits", ", ".join(capsule.commits)),
        ("EnabledBy", capsule.enabled_by),
        ("Enables", ", ".join(capsule.enables)),
        ("Constrains", ", ".join(capsule.constrains)),
        ("SupersededBy", capsule.superseded_by),
        ("Supersedes", ", ".join(capsule.supersedes)),
        ("InvalidationReason", capsule.invalidation_reason),
        ("Learned", capsule.learned),
    ]
    lines = [f"### Decision: {_one_line(capsule.question)}"]
    lines.extend(f"- **{label}:** {_one_line(value)}" for label, value in fields if value.strip())
    lines.extend(f"- **{_CHALLENGE_LABEL}:** {challenge.model_dump_json()}" for challenge in capsule.challenges)
    return lines


def encode_capsules(session_id: str, capsules: Iterable[Capsule]) -> str:
    """Render the consolidated ``capsules.md`` document, grouped by phase rank."""
    by_phase: dict[str, list[Capsule]] = {}
    for capsule in capsules:
        by_phase.setdefault(capsule.phase, []).append(capsule)

    lines = [
        "---",
        f"session: {session_id}",
        "type: capsules",
        "---",
        "",
        DOCUMENT_TITLE,
        "",
        f"**Session:** [[{session_id}]]",
        "",
    ]
    for phase in _section_order(by_phase):
        lines.append(f"## {phase}")
        lines.append("")
        for capsule in by_phase[phase]:
            lines.extend(_encode_capsule(capsule))
            lines.append("")
    return "\n".join(lines)


def _decode_challenges(block: str) -> list[Challenge]:
    challenges: list[Challenge] = []
    for match in _field_re(_CHALLENGE_LABEL).finditer(block):
        try:
            challenges.append(Challenge.model_validate_json(match.group(1).strip()))
        except ValidationError as exc:
            logger.warning("Ignoring malformed challenge record: %s", exc)
    return challenges


def _decode_capsule(session_id: str, phase: str, question: str, block: str) -> Capsule:
    alternatives = split_csv(extract_field(block, "Alternatives"))
    timestamp = _parse_time(extract_field(block, "Timestamp"))
    created_at = _parse_time(extract_field(block, "CreatedAt")) or timestamp or utc_now()
    default_type = CapsuleType.DECISION if alternatives else CapsuleType.FINDING
    return Capsule(
        id=extract_field(block, "ID") or generate_id(session_id, phase, question),
        session_id=session_id,
        phase=phase,
        question=question,
        choice=extract_field(block, "Choice"),
        rationale=extract_field(block, "Rationale"),
        alternatives=alternatives,
        origin=_enum_value(Origin, extract_field(block, "Origin") or extract_field(block, "Source"), Origin.AGENT),
        status=_enum_value(CapsuleStatus, extract_field(block, "Status"), CapsuleStatus.HYPOTHESIS),
        type=_enum_value(CapsuleType, extract_field(block, "Type"), default_type),
        significance=_enum_value(Significance, extract_field(block, "Significance"), Significance.IMPLEMENTATION),
        confirmation=_enum_value(Confirmation, extract_field(block, "Confirmation"), Confirmation.IMPLICIT),
        pattern_id=extract_field(block, "PatternID"),
        tags=split_csv(extract_field(block, "Tags")),
        repos=split_csv(extract_field(block, "Repos")),
        commits=split_csv(extract_field(block, "Commits")),
        enabled_by=extract_field(block, "EnabledBy"),
        enables=split_csv(extract_field(block, "Enables")),
        constrains=split_csv(extract_field(block, "Constrains")),
        superseded_by=extract_field(block, "SupersededBy"),
        supersedes=split_csv(extract_field(block, "Supersedes")),
        invalidation_reason=extract_field(block, "InvalidationReason"),
        learned=extract_field(block, "Learned"),
        timestamp=timestamp or created_at,
        created_at=created_at,
        invalidated_at=_parse_time(extract_field(block, "InvalidatedAt")),
        challenges=_decode_challenges(block),
    )


def decode_capsules(content: str) -> list[Capsule]:
    """Parse a consolidated document. Any subset of fields may be present."""
    document = artifacts.parse(content)
    session_id = document.header.session
    body = document.body
    sections = list(_PHASE_SECTION_RE.finditer(body))
    capsules: list[Capsule] = []
    for index, section in enumerate(sections):
        end = sections[index + 1].start() if index + 1 < len(sections) else len(body)
        phase_block = body[section.end() : end]
        matches = list(_DECISION_RE.finditer(phase_block))
        for position, match in enumerate(matches):
            block_end = matches[position + 1].start() if position + 1 < len(matches) else len(phase_block)
            capsules.append(
                _decode_capsule(session_id, section.group(1), match.group(1).strip(), phase_block[match.end() : block_end])
            )
    return capsules


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def matches_filter(capsule: Capsule, flt: CapsuleFilter) -> bool:
    if flt.session_id is not None and capsule.session_id != flt.session_id:
        return False
    if flt.repo is not None and flt.repo not in capsule.repos:
        return False
    if flt.phase is not None and capsule.phase != flt.phase:
        return False
    if flt.status is not None and capsule.status is not flt.status:
        return False
    if flt.type is not None and capsule.type is not flt.type:
        return False
    if flt.significance is not None and capsule.significance is not flt.significance:
        return False
    if not flt.include_invalidated and capsule.status is CapsuleStatus.INVALIDATED:
        return False
    if flt.tag is None and flt.file_path is None:
        return True
    tags = normalize_tags(capsule.tags)
    if flt.tag is not None and not matches_tag_query(tags, flt.tag):
        return False
    if flt.file_path is not None and not matches_tag_query(tags, f"{TagPrefix.FILE.value}{flt.file_path}"):
        return False
    return True


def dedupe_latest_phase(capsules: Iterable[Capsule]) -> list[Capsule]:
    """One capsule per (session, question), the one with the highest phase rank.

    Output keeps the order in which each (session, question) was first seen.
    """
    best: dict[tuple[str, str], Capsule] = {}
    for capsule in capsules:
        key = (capsule.session_id, capsule.question)
        current = best.get(key)
        if current is None or phase_rank(capsule.phase) > phase_rank(current.phase):
            best[key] = capsule
    return list(best.values())


def merge_capsule(existing: Capsule, incoming: Capsule) -> Capsule:
    """Upsert policy for an id collision: incoming content wins, history is kept."""
    merged = incoming.model_copy(deep=True)
    merged.created_at = existing.created_at
    merged.challenges = [*existing.challenges, *(c for c in incoming.challenges if c not in existing.challenges)]
    merged.commits = _union(existing.commits, incoming.commits)
    merged.supersedes = _union(existing.supersedes, incoming.supersedes)
    merged.superseded_by = incoming.superseded_by or existing.superseded_by
    return merged


def _union(first: Iterable[str], second: Iterable[str]) -> list[str]:
    return list(dict.fromkeys([*first, *second]))


def extract_manifest_paths(ledger: str) -> list[str]:
    """Path-like entries from the ledger's ``## File Manifest`` section."""
    paths: list[str] = []
    in_manifest = False
    for line in ledger.splitlines():
        trimmed = line.strip()
        if trimmed.startswith("## "):
            if in_manifest:
                break
            lowered = trimmed.lower()
            in_manifest = "file" in lowered and "manifest" in lowered
            continue
        if not in_manifest or not trimmed.startswith(("- ", "* ")):
            continue
        entry = trimmed[2:].strip().strip("`")
        colon = entry.find(":")
        if colon > 0:
            entry = entry[:colon].strip()
        space = entry.find(" ")
        if space > 0:
            entry = entry[:space]
        entry = entry.strip("`")
        if entry and ("/" in entry or "." in entry) and entry not in paths:
            paths.append(entry)
    return paths


@dataclass(frozen=True)
class CapsuleEdge:
    source: str
    target: str
    kind: str


@dataclass
class CapsuleGraph:
    nodes: dict[str, Capsule] = field(default_factory=dict)
    edges: list[CapsuleEdge] = field(default_factory=list)


def build_graph(capsules: Iterable[Capsule]) -> CapsuleGraph:
    """Dependency and supersession edges between the given capsules, each emitted once."""
    graph = CapsuleGraph(nodes={capsule.id: capsule for capsule in capsules})
    seen: set[CapsuleEdge] = set()

    def add(source: str, target: str, kind: str) -> None:
        edge = CapsuleEdge(source=source, target=target, kind=kind)
        if source in graph.nodes and target in graph.nodes and edge not in seen:
            seen.add(edge)
            graph.edges.append(edge)

    for capsule in graph.nodes.values():
        for target in capsule.enables:
            add(capsule.id, target, "enables")
        if capsule.enabled_by:
            add(capsule.enabled_by, capsule.id, "enables")
        for target in capsule.constrains:
            add(capsule.id, target, "constrains")
        for older in capsule.supersedes:
            add(capsule.id, older, "supersedes")
        if capsule.superseded_by:
            add(capsule.superseded_by, capsule.id, "supersedes")
    return graph


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class CapsuleStore:
    """Capsules persisted in one consolidated ``capsules.md`` per session.

    Every write reloads the whole document under the session's lock, applies
    the change and replaces the file atomically.
    """

    def __init__(self, home: CardHome, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.home = home
        self._clock = clock

    # -- document access -------------------------------------------------

    def _session_ids(self) -> list[str]:
        if not self.home.sessions_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.home.sessions_dir.iterdir()
            if entry.is_dir() and (entry / CAPSULES_FILENAME).is_file()
        )

    def load_session(self, session_id: str) -> list[Capsule]:
        path = self.home.capsules_path(session_id)
        if not path.is_file():
            return []
        return decode_capsules(path.read_text(encoding="utf-8"))

    def _update(self, session_id: str, mutate: Callable[[list[Capsule]], int]) -> int:
        path = self.home.capsules_path(session_id)
        with locked_file(path):
            capsules = self.load_session(session_id)
            changed = mutate(capsules)
            if changed:
                atomic_write_text(path, encode_capsules(session_id, capsules))
        return changed

    def _locate(self, capsule_id: str) -> Capsule:
        for session_id in self._session_ids():
            for capsule in self.load_session(session_id):
                if capsule.id == capsule_id:
                    return capsule
        raise CapsuleNotFoundError(capsule_id)

    def _mutate_capsule(self, capsule_id: str, apply: Callable[[Capsule], None]) -> Capsule:
        session_id = self._locate(capsule_id).session_id
        updated: list[Capsule] = []

        def mutate(capsules: list[Capsule]) -> int:
            for capsule in capsules:
                if capsule.id == capsule_id:
                    apply(capsule)
                    updated.append(capsule)
                    return 1
            return 0

        self._update(session_id, mutate)
        if not updated:
            raise CapsuleNotFoundError(capsule_id)
        return updated[0]

    # -- writes ----------------------------------------------------------

    def store(self, capsule: Capsule) -> Capsule:
        stored = self.store_many(capsule.session_id, [capsule])
        return stored[0]

    def store_many(self, session_id: str, incoming: Iterable[Capsule]) -> list[Capsule]:
        """Upsert capsules into one session's document, merging on id collisions."""
        pending = list(incoming)
        stored: list[Capsule] = []
        if not pending:
            return stored

        def mutate(capsules: list[Capsule]) -> int:
            index = {capsule.id: position for position, capsule in enumerate(capsules)}
            for capsule in pending:
                if capsule.session_id != session_id:
                    raise ValueError(f"capsule {capsule.id} belongs to {capsule.session_id}, not {session_id}")
                position = index.get(capsule.id)
                if position is None:
                    index[capsule.id] = len(capsules)
                    capsules.append(capsule)
                    stored.append(capsule)
                else:
                    merged = merge_capsule(capsules[position], capsule)
                    capsules[position] = merged
                    stored.append(merged)
            return len(pending)

        self._update(session_id, mutate)
        return stored

    def record(
        self,
        session_id: str,
        phase: str,
        question: str,
        *,
        choice: str = "",
        rationale: str = "",
        alternatives: Iterable[str] = (),
        tags: Iterable[str] = (),
        repos: Iterable[str] = (),
        significance: Significance = Significance.IMPLEMENTATION,
    ) -> Capsule:
        """Store an operator-supplied decision directly, bypassing artifact extraction."""
        alternative_list = [item.strip() for item in alternatives if item.strip()]
        now = self._clock()
        capsule = Capsule(
            id=generate_id(session_id, phase, question),
            session_id=session_id,
            phase=phase,
            question=question,
            choice=choice,
            rationale=rationale,
            alternatives=alternative_list,
            origin=Origin.HUMAN,
            confirmation=Confirmation.EXPLICIT,
            type=CapsuleType.DECISION if alternative_list else CapsuleType.FINDING,
            significance=significance,
            tags=normalize_tags(tags),
            repos=list(repos),
            timestamp=now,
            created_at=now,
        )
        return self.store(capsule)

    def verify(self, capsule_id: str) -> Capsule:
        def apply(capsule: Capsule) -> None:
            capsule.status = CapsuleStatus.VERIFIED

        return self._mutate_capsule(capsule_id, apply)

    def verify_session_capsules(self, session_id: str, phase: str) -> int:
        def mutate(capsules: list[Capsule]) -> int:
            count = 0
            for capsule in capsules:
                if capsule.phase == phase and capsule.status is not CapsuleStatus.VERIFIED:
                    capsule.status = CapsuleStatus.VERIFIED
                    count += 1
            return count

        count = self._update(session_id, mutate)
        logger.info("Verified %d %s capsules in %s", count, phase, session_id)
        return count

    def add_challenge(self, capsule_id: str, reason: str, resolution: str = "pending") -> Capsule:
        challenge = Challenge(timestamp=self._clock(), reason=reason, resolution=resolution)

        def apply(capsule: Capsule) -> None:
            capsule.challenges.append(challenge)

        return self._mutate_capsule(capsule_id, apply)

    def challenge_phase_capsules(self, session_id: str, phase: str, reason: str, resolution: str = "pending") -> int:
        now = self._clock()

        def mutate(capsules: list[Capsule]) -> int:
            count = 0
            for capsule in capsules:
                if capsule.phase == phase:
                    capsule.challenges.append(Challenge(timestamp=now, reason=reason, resolution=resolution))
                    count += 1
            return count

        return self._update(session_id, mutate)

    def invalidate(self, capsule_id: str, reason: str, learned: str = "", superseded_by: str = "") -> Capsule:
        """Mark a capsule invalidated and link it to its replacement.

        The replacement's ``supersedes`` list is updated best-effort: a missing
        replacement is logged, not raised.
        """
        if superseded_by and superseded_by == capsule_id:
            raise ValueError(f"capsule {capsule_id} cannot supersede itself")
        now = self._clock()

        def apply(capsule: Capsule) -> None:
            capsule.status = CapsuleStatus.INVALIDATED
            capsule.invalidated_at = now
            capsule.invalidation_reason = reason
            capsule.learned = learned
            if superseded_by:
                capsule.superseded_by = superseded_by
            capsule.challenges.append(Challenge(timestamp=now, reason=reason, resolution="invalidated"))

        invalidated = self._mutate_capsule(capsule_id, apply)

        if superseded_by:

            def link(replacement: Capsule) -> None:
                if capsule_id not in replacement.supersedes:
                    replacement.supersedes.append(capsule_id)

            try:
                self._mutate_capsule(superseded_by, link)
            except (CapsuleNotFoundError, OSError, ValueError) as exc:
                logger.warning("Could not link %s as superseding %s: %s", superseded_by, capsule_id, exc)
        logger.info("Invalidated capsule %s", capsule_id)
        return invalidated

    def link_commits(self, capsule_id: str, commits: Iterable[str]) -> Capsule:
        shas = [sha.strip() for sha in commits if sha.strip()]

        def apply(capsule: Capsule) -> None:
            capsule.commits = _union(capsule.commits, shas)

        return self._mutate_capsule(capsule_id, apply)

    def link_commits_for_session(self, session_id: str, commits: Iterable[str], *, phase: str | None = None) -> int:
        """Attach commit shas to every capsule of the session, or only those of ``phase``."""
        shas = [sha.strip() for sha in commits if sha.strip()]

        def mutate(capsules: list[Capsule]) -> int:
            if not shas:
                return 0
            targets = [capsule for capsule in capsules if phase is None or capsule.phase == phase]
            for capsule in targets:
                capsule.commits = _union(capsule.commits, shas)
            return len(targets)

        return self._update(session_id, mutate)

    def enrich_tags_from_manifest(self, session_id: str, ledger_path: Path | None = None) -> int:
        """Tag every session capsule with the files listed in the ledger manifest.

        Returns:
            Number of capsules that gained at least one tag.
        """
        path = ledger_path or self.home.session_dir(session_id) / artifacts.phase_filename("record")
        if not path.is_file():
            return 0
        file_tags = [normalize_tag(entry) for entry in extract_manifest_paths(path.read_text(encoding="utf-8"))]
        if not file_tags:
            return 0

        def mutate(capsules: list[Capsule]) -> int:
            updated = 0
            for capsule in capsules:
                missing = [tag for tag in file_tags if tag not in capsule.tags]
                if missing:
                    capsule.tags.extend(missing)
                    updated += 1
            return updated

        if not self.home.capsules_path(session_id).is_file():
            return 0
        return self._update(session_id, mutate)

    # -- reads -----------------------------------------------------------

    def get(self, capsule_id: str) -> Capsule:
        return self._locate(capsule_id)

    def list(self, flt: CapsuleFilter | None = None) -> list[Capsule]:
        flt = flt or CapsuleFilter()
        session_ids = self._session_ids()
        if flt.session_id is not None:
            session_ids = [sid for sid in session_ids if sid == flt.session_id]
        matched: list[Capsule] = []
        for session_id in session_ids:
            try:
                capsules = self.load_session(session_id)
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable capsule document for %s: %s", session_id, exc)
                continue
            matched.extend(capsule for capsule in capsules if matches_filter(capsule, flt))
        if flt.show_evolution:
            return matched
        return dedupe_latest_phase(matched)

    def list_tags(self, session_id: str | None = None) -> list[tuple[str, int]]:
        counts: Counter[str] = Counter()
        flt = CapsuleFilter(session_id=session_id, include_invalidated=True, show_evolution=True)
        for capsule in self.list(flt):
            counts.update(dict.fromkeys(capsule.tags, 1))
        return sorted(counts.items())

    def get_chain(self, capsule_id: str, *, transitive: bool = False) -> list[Capsule]:
        """The capsule, then its replacement, then the capsules it replaced.

        One hop in each direction by default; ``transitive`` follows the whole
        chain both ways. Missing links are skipped.
        """
        current = self.get(capsule_id)
        chain = [current]
        seen = {current.id}
        newer_frontier = [current]
        older_frontier = [current]
        while newer_frontier or older_frontier:
            next_newer: list[Capsule] = []
            for capsule in newer_frontier:
                found = self._find_optional(capsule.superseded_by, seen)
                if found is not None:
                    chain.append(found)
                    next_newer.append(found)
            next_older: list[Capsule] = []
            for capsule in older_frontier:
                for older_id in capsule.supersedes:
                    found = self._find_optional(older_id, seen)
                    if found is not None:
                        chain.append(found)
                        next_older.append(found)
            if not transitive:
                break
            newer_frontier, older_frontier = next_newer, next_older
        return chain

    def _find_optional(self, capsule_id: str, seen: set[str]) -> Capsule | None:
        if not capsule_id or capsule_id in seen:
            return None
        seen.add(capsule_id)
        try:
            return self.get(capsule_id)
        except CapsuleNotFoundError:
            logger.warning("Supersession link points at missing capsule %s", capsule_id)
            return None

