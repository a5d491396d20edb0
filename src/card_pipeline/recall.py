"""Recall of decisions from earlier sessions, ranked by how they matched."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Callable, Iterable, Sequence

from .capsules import CapsuleStore
from .models import Capsule, CapsuleFilter
from .session import SessionStore
from .tags import TagPrefix, filter_by_prefix, matches_tag_query_with_synonyms, normalize_tags, parse_tag

logger = logging.getLogger(__name__)

DEFAULT_MAX_CAPSULES = 20
DEFAULT_RECENT_LIMIT = 15
GIT_LOG_DEPTH = 50
CONTEXT_HEADER = "## Prior context\n\nThe following decisions were made in earlier sessions touching related code:\n\n"


class MatchTier(IntEnum):
    """How a capsule was found; lower is more relevant."""

    EXACT_FILE = 0
    PARTIAL_FILE = 1
    GIT = 2
    TAG = 3
    TEXT = 4
    REPO = 5

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")

    @property
    def is_strong(self) -> bool:
        return self <= MatchTier.GIT


@dataclass(frozen=True)
class RecallQuery:
    files: tuple[str, ...] = ()
    repo_id: str = ""
    repo_path: str = ""
    tags: tuple[str, ...] = ()
    text: str = ""
    max_capsules: int = 0
    include_evolution: bool = False
    include_invalidated: bool = False
    exclude_session: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.files or self.tags or self.text or self.repo_id)


@dataclass(frozen=True)
class SessionSummary:
    id: str
    description: str
    status: str
    created_at: datetime


@dataclass(frozen=True)
class ScoredCapsule:
    capsule: Capsule
    tier: MatchTier


@dataclass
class RecallResult:
    query: RecallQuery
    capsules: list[ScoredCapsule] = field(default_factory=list)
    sessions: list[SessionSummary] = field(default_factory=list)


def file_match_tier(tags: Iterable[str], file: str) -> MatchTier | None:
    """Match a path against ``file:`` tags.

    Equal paths are exact. A tag naming a parent directory of ``file``, or a
    file below the queried directory, is partial.
    """
    wanted = file.strip().rstrip("/").lower()
    if not wanted:
        return None
    best: MatchTier | None = None
    for tag in filter_by_prefix(normalize_tags(tags), TagPrefix.FILE):
        value = parse_tag(tag)[1].rstrip("/").lower()
        if value == wanted:
            return MatchTier.EXACT_FILE
        if wanted.startswith(value + "/") or value.startswith(wanted + "/"):
            best = MatchTier.PARTIAL_FILE
    return best


def matches_text(capsule: Capsule, text: str) -> bool:
    needle = text.lower()
    return any(needle in value.lower() for value in (capsule.question, capsule.choice, capsule.rationale))


def git_log_commits(repo_path: str, files: Sequence[str]) -> list[str]:
    """SHAs of recent commits touching ``files``; empty when git is unavailable."""
    try:
        result = subprocess.run(
            ["git", "-C", repo_path, "log", "--format=%H", f"-{GIT_LOG_DEPTH}", "--", *files],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("Unable to read git history for %s: %s", repo_path, exc)
        return []
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


class CapsuleRecall:
    """Runs every applicable strategy for a query and merges the hits.

    A capsule found by several strategies keeps its most relevant tier.
    Results are ordered by tier, then newest first, and capped.
    """

    def __init__(
        self,
        capsules: CapsuleStore,
        sessions: SessionStore,
        *,
        git_log: Callable[[str, Sequence[str]], list[str]] = git_log_commits,
    ) -> None:
        self.capsules = capsules
        self.sessions = sessions
        self._git_log = git_log

    def query(self, query: RecallQuery) -> RecallResult:
        candidates = [
            capsule
            for capsule in self.capsules.list(
                CapsuleFilter(show_evolution=query.include_evolution, include_invalidated=query.include_invalidated)
            )
            if capsule.session_id != query.exclude_session
        ]
        if query.is_empty:
            return self._recent(query, candidates)

        scored: dict[str, ScoredCapsule] = {}

        def offer(capsule: Capsule, tier: MatchTier) -> None:
            current = scored.get(capsule.id)
            if current is None or tier < current.tier:
                scored[capsule.id] = ScoredCapsule(capsule, tier)

        repo_scoped = [capsule for capsule in candidates if not query.repo_id or query.repo_id in capsule.repos]
        if query.files:
            for capsule in repo_scoped:
                tiers = [tier for tier in (file_match_tier(capsule.tags, path) for path in query.files) if tier is not None]
                if tiers:
                    offer(capsule, min(tiers))
            if query.repo_path:
                commits = set(self._git_log(query.repo_path, query.files))
                for capsule in repo_scoped:
                    if commits.intersection(capsule.commits):
                        offer(capsule, MatchTier.GIT)
        if query.tags:
            for capsule in candidates:
                if any(matches_tag_query_with_synonyms(capsule.tags, tag) for tag in query.tags):
                    offer(capsule, MatchTier.TAG)
        if query.text.strip():
            for capsule in candidates:
                if matches_text(capsule, query.text.strip()):
                    offer(capsule, MatchTier.TEXT)

        repo_only = bool(query.repo_id) and not (query.files or query.tags or query.text.strip())
        if repo_only:
            for capsule in repo_scoped:
                offer(capsule, MatchTier.REPO)

        ranked = sorted(scored.values(), key=lambda item: item.capsule.timestamp, reverse=True)
        ranked.sort(key=lambda item: item.tier)
        ranked = ranked[: query.max_capsules or DEFAULT_MAX_CAPSULES]
        session_ids = [item.capsule.session_id for item in ranked]
        if repo_only:
            session_ids.extend(
                session.id
                for session in self.sessions.list()
                if query.repo_id in session.repos and session.id != query.exclude_session
            )
        return RecallResult(query=query, capsules=ranked, sessions=self._summaries(session_ids))

    def _recent(self, query: RecallQuery, candidates: list[Capsule]) -> RecallResult:
        newest = sorted(candidates, key=lambda capsule: capsule.timestamp, reverse=True)
        newest = newest[: query.max_capsules or DEFAULT_RECENT_LIMIT]
        return RecallResult(
            query=query,
            capsules=[ScoredCapsule(capsule, MatchTier.REPO) for capsule in newest],
            sessions=self._summaries(capsule.session_id for capsule in newest),
        )

    def _summaries(self, session_ids: Iterable[str]) -> list[SessionSummary]:
        summaries: list[SessionSummary] = []
        for session_id in dict.fromkeys(session_ids):
            try:
                session = self.sessions.get(session_id)
            except (OSError, ValueError) as exc:
                logger.debug("Recall skipping session %s: %s", session_id, exc)
                continue
            summaries.append(
                SessionSummary(
                    id=session.id,
                    description=session.description,
                    status=session.status.value,
                    created_at=session.created_at,
                )
            )
        return summaries


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


def _full_entry(item: ScoredCapsule) -> str:
    capsule = item.capsule
    lines = [
        f"### [{capsule.status.value}] Decision: {capsule.question}",
        f"- **Choice:** {capsule.choice}",
        f"- **Rationale:** {capsule.rationale}",
    ]
    if capsule.tags:
        lines.append(f"- **Tags:** {', '.join(capsule.tags)}")
    if capsule.superseded_by:
        lines.append(f"- **Superseded by:** {capsule.superseded_by}")
    lines.append(f"- **Phase:** {capsule.phase}, **Session:** {capsule.session_id}")
    return "\n".join(lines) + "\n\n"


def format_context(result: RecallResult, token_budget: int = 0) -> str:
    """Render recalled capsules as a markdown block for a phase prompt.

    Strong matches get a full block, weaker ones a single line. Entries
    stop once the next one would exceed ``token_budget``; 0 means unlimited.
    Returns an empty string when nothing was recalled.
    """
    if not result.capsules:
        return ""
    parts = [CONTEXT_HEADER]
    used = estimate_tokens(CONTEXT_HEADER)
    for item in result.capsules:
        if item.tier.is_strong:
            entry = _full_entry(item)
        else:
            capsule = item.capsule
            entry = f"- [{capsule.status.value}] ({capsule.phase}) {capsule.question} -> {capsule.choice}\n"
        cost = estimate_tokens(entry)
        if token_budget and used + cost > token_budget:
            break
        parts.append(entry)
        used += cost
    return "".join(parts)


def format_terminal(result: RecallResult) -> str:
    if not result.capsules and not result.sessions:
        return "No prior context found."
    lines: list[str] = []
    if result.sessions:
        lines.append(f"Found {len(result.sessions)} prior session(s):")
        lines.extend(
            f"  - {summary.id}: {summary.description} [{summary.status}] ({summary.created_at:%Y-%m-%d})"
            for summary in result.sessions
        )
    if result.capsules:
        if lines:
            lines.append("")
        lines.append(f"Found {len(result.capsules)} prior decision(s):")
        lines.extend(
            f"  - {item.capsule.id} [{item.tier.label}] {item.capsule.question} -> {item.capsule.choice}"
            for item in result.capsules
        )
    return "\n".join(lines)
