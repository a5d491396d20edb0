from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .errors import ArtifactParseError, ArtifactValidationError, UnknownPhaseError
from .models import Artifact, ArtifactHeader, Phase
from .state_store import CAPSULES_FILENAME, CardHome, atomic_write_text

logger = logging.getLogger(__name__)

HEADER_DELIMITER = "---"

PHASE_FILENAMES: Mapping[str, str] = MappingProxyType(
    {
        Phase.INVESTIGATE.value: "investigation_summary.md",
        Phase.PLAN.value: "implementation_guide.md",
        Phase.REVIEW.value: "implementation_guide.md",
        Phase.EXECUTE.value: "execution_log.md",
        Phase.VERIFY.value: "verification_notes.md",
        Phase.CONCLUDE.value: "research_conclusions.md",
        Phase.RECORD.value: "milestone_ledger.md",
    }
)

# Any one marker (lower-cased substring) satisfies the phase. Simplify has no artifact.
PHASE_MARKERS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        Phase.SIMPLIFY.value: (),
        Phase.INVESTIGATE.value: ("## executive summary", "## investigation summary"),
        Phase.PLAN.value: ("## implementation steps", "step"),
        Phase.REVIEW.value: ("## implementation steps", "step"),
        Phase.EXECUTE.value: ("## execution", "execution log", "execution summary"),
        Phase.VERIFY.value: ("verification outcome", "issues identified"),
        Phase.CONCLUDE.value: ("## findings", "## conclusions", "## recommendations"),
        Phase.RECORD.value: ("## summary", "## file manifest"),
    }
)

VERSIONED_PHASES: Mapping[str, str] = MappingProxyType(
    {
        Phase.EXECUTE.value: "execution_log",
        Phase.VERIFY.value: "verification_notes",
    }
)

# Session-level files that survive completion cleanup.
PERMANENT_FILENAMES = frozenset({PHASE_FILENAMES[Phase.RECORD.value], CAPSULES_FILENAME})


def _phase_key(phase: Phase | str) -> str:
    return phase.value if isinstance(phase, Phase) else str(phase)


def phase_filename(phase: Phase | str) -> str:
    key = _phase_key(phase)
    return PHASE_FILENAMES.get(key, f"{key}.md")


def version_filename(phase: Phase | str, attempt: int) -> str:
    key = _phase_key(phase)
    stem = VERSIONED_PHASES.get(key)
    if stem is None:
        raise ValueError(f"phase {key!r} does not keep versioned copies")
    return f"{stem}_v{attempt}.md"


def parse(raw: str) -> Artifact:
    """Split raw artifact text into a YAML header and a markdown body.

    Text without a leading ``---`` is all body. A leading ``---`` without a
    closing delimiter, or header content that is not a YAML mapping, raises
    ``ArtifactParseError``.
    """
    content = raw.lstrip()
    if not content.startswith(HEADER_DELIMITER):
        return Artifact(header=ArtifactHeader(), body=raw)

    rest = content[len(HEADER_DELIMITER) :].lstrip(" \t").removeprefix("\r").removeprefix("\n")
    if rest.startswith(HEADER_DELIMITER):
        header_text, body = "", rest[len(HEADER_DELIMITER) :]
    else:
        end = rest.find("\n" + HEADER_DELIMITER)
        if end == -1:
            raise ArtifactParseError("unterminated frontmatter: missing closing '---'")
        header_text = rest[:end]
        body = rest[end + 1 + len(HEADER_DELIMITER) :]

    try:
        payload = yaml.safe_load(header_text) if header_text.strip() else {}
    except yaml.YAMLError as exc:
        raise ArtifactParseError(f"failed to decode frontmatter: {exc}") from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ArtifactParseError(f"frontmatter must be a mapping, got {type(payload).__name__}")
    try:
        header = ArtifactHeader.model_validate(_coerce_header(payload))
    except ValidationError as exc:
        raise ArtifactParseError(f"invalid frontmatter fields: {exc}") from exc
    return Artifact(header=header, body=body.lstrip("\r\n"))


def _coerce_header(payload: dict[str, Any]) -> dict[str, Any]:
    coerced = dict(payload)
    repos = coerced.get("repos")
    if isinstance(repos, str):
        coerced["repos"] = [repos]
    elif repos is None:
        coerced.pop("repos", None)
    for key in ("session", "phase"):
        if key in coerced and coerced[key] is not None and not isinstance(coerced[key], str):
            coerced[key] = str(coerced[key])
    return coerced


def validate(artifact: Artifact | None, phase: Phase | str) -> None:
    """Check the body carries at least one marker for ``phase``.

    Raises:
        UnknownPhaseError: For a phase with no marker rules.
        ArtifactValidationError: When every marker is missing. Callers treat
            this as a warning.
    """
    key = _phase_key(phase)
    if key not in PHASE_MARKERS:
        raise UnknownPhaseError(f"unknown phase: {key}")
    markers = PHASE_MARKERS[key]
    if not markers:
        return
    if artifact is None:
        raise ArtifactValidationError(f"{key} artifact is missing")
    body = artifact.body.lower()
    if not any(marker in body for marker in markers):
        expected = " or ".join(repr(marker) for marker in markers)
        raise ArtifactValidationError(f"{key} artifact lacks required section ({expected})")


def serialize(artifact: Artifact) -> str:
    payload = artifact.header.model_dump(mode="json", exclude_none=True)
    header_text = yaml.safe_dump(payload, sort_keys=False, default_flow_style=False, allow_unicode=True)
    return f"{HEADER_DELIMITER}\n{header_text}{HEADER_DELIMITER}\n\n{artifact.body}"


def load(path: Path) -> Artifact:
    artifact = parse(path.read_text(encoding="utf-8"))
    artifact.path = path
    return artifact


class ArtifactStore:
    """Session-scoped artifact persistence under the card home."""

    def __init__(self, home: CardHome) -> None:
        self.home = home

    def store(self, artifact: Artifact, repo_id: str, filename: str | None = None) -> Path:
        """Write a repo-scoped artifact to ``<session>/changes/<repo>/<filename>``."""
        session_id = self._session_id(artifact)
        name = filename or phase_filename(artifact.header.phase)
        path = self.home.changes_dir(session_id, repo_id) / name
        return self._write(artifact, path)

    def store_session_level(self, artifact: Artifact, filename: str | None = None) -> Path:
        session_id = self._session_id(artifact)
        name = filename or phase_filename(artifact.header.phase)
        return self._write(artifact, self.home.session_dir(session_id) / name)

    def store_version(self, artifact: Artifact, phase: Phase | str, attempt: int) -> Path:
        """Keep an ``_v<n>`` copy without changing the artifact's recorded path."""
        session_id = self._session_id(artifact)
        path = self.home.session_dir(session_id) / version_filename(phase, attempt)
        atomic_write_text(path, serialize(artifact))
        return path

    def session_path(self, session_id: str, phase: Phase | str) -> Path:
        return self.home.session_dir(session_id) / phase_filename(phase)

    def exists(self, session_id: str, phase: Phase | str) -> bool:
        return self.session_path(session_id, phase).is_file()

    def load(self, session_id: str, phase: Phase | str) -> Artifact:
        return load(self.session_path(session_id, phase))

    def cleanup_intermediate(self, session_id: str) -> list[Path]:
        """Delete ephemeral phase artifacts and versioned copies, keeping the permanent record."""
        session_dir = self.home.session_dir(session_id)
        targets = {session_dir / name for name in PHASE_FILENAMES.values() if name not in PERMANENT_FILENAMES}
        for stem in VERSIONED_PHASES.values():
            targets.update(session_dir.glob(f"{stem}_v*.md"))
        removed: list[Path] = []
        for path in sorted(targets):
            if path.is_file():
                path.unlink()
                removed.append(path)
        if removed:
            logger.info("Removed %d intermediate artifacts for %s", len(removed), session_id)
        return removed

    @staticmethod
    def _session_id(artifact: Artifact) -> str:
        if not artifact.header.session:
            raise ValueError("artifact header has no session id")
        return artifact.header.session

    @staticmethod
    def _write(artifact: Artifact, path: Path) -> Path:
        atomic_write_text(path, serialize(artifact))
        artifact.path = path
        return path
