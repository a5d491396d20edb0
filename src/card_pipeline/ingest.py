from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from . import artifacts
from .artifacts import ArtifactStore
from .capsules import CapsuleStore, extract_from_artifact
from .errors import ArtifactParseError, ArtifactValidationError
from .models import Artifact, ArtifactStatus, Capsule, Phase, Session, utc_now

logger = logging.getLogger(__name__)

_KNOWN_FILENAMES = tuple(dict.fromkeys(artifacts.PHASE_FILENAMES.values()))


@dataclass
class IngestResult:
    artifact: Artifact
    path: Path
    version_path: Path | None = None
    capsules: list[Capsule] = field(default_factory=list)


def _has_session_header(path: Path) -> bool:
    try:
        return bool(artifacts.load(path).header.session)
    except (OSError, UnicodeDecodeError, ArtifactParseError):
        return False


def _markdown_candidates(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    files = sorted(path for path in directory.iterdir() if path.is_file() and path.suffix == ".md")
    known = [path for path in files if path.name in _KNOWN_FILENAMES]
    return known + [path for path in files if path.name not in _KNOWN_FILENAMES]


def find_markdown_artifact(directory: Path, *, require_header: bool = True) -> Path | None:
    """First markdown file in ``directory`` (known artifact names first) that carries a session header."""
    for path in _markdown_candidates(directory):
        if not require_header or _has_session_header(path):
            return path
    return None


class ArtifactIngestor:
    """Promotes a phase's ephemeral output into session storage.

    Shared by live runs and crash recovery so both follow the same steps:
    normalize the header, validate (warning only), store at session scope,
    keep a numbered copy for execute/verify, extract capsules.
    """

    def __init__(
        self,
        artifact_store: ArtifactStore,
        capsule_store: CapsuleStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.artifacts = artifact_store
        self.capsules = capsule_store
        self._clock = clock

    def locate(self, work_dir: Path, phase: Phase, repo_root: Path | None = None) -> Path | None:
        """Find the artifact an agent produced for ``phase``.

        Search order: expected filename in ``work_dir``, expected filename in
        the repo root, any headed markdown in ``work_dir``, any headed markdown
        in the repo root. Files found in the repo root are moved into
        ``work_dir``.
        """
        filename = artifacts.phase_filename(phase)
        expected = work_dir / filename
        if expected.is_file():
            return expected

        if repo_root is not None and (repo_root / filename).is_file():
            logger.warning("%s artifact written to repo root %s; moving it to %s", phase.value, repo_root, work_dir)
            return self._move_into(repo_root / filename, work_dir)

        fallback = find_markdown_artifact(work_dir)
        if fallback is not None:
            logger.warning("Expected %s but found %s in %s", filename, fallback.name, work_dir)
            return fallback

        if repo_root is not None:
            stray = find_markdown_artifact(repo_root)
            if stray is not None:
                logger.warning("Agent ignored the output directory; moving %s from %s", stray.name, repo_root)
                return self._move_into(stray, work_dir)
        return None

    @staticmethod
    def _move_into(source: Path, work_dir: Path) -> Path:
        work_dir.mkdir(parents=True, exist_ok=True)
        target = work_dir / source.name
        shutil.move(str(source), str(target))
        return target

    def normalize(self, artifact: Artifact, session: Session, phase: Phase) -> Artifact:
        header = artifact.header
        if header.session and header.session != session.id:
            logger.warning("Artifact claims session %s; rewriting to %s", header.session, session.id)
        header.session = session.id
        header.phase = header.phase or phase.value
        if header.phase != phase.value:
            logger.warning("Artifact claims phase %s while ingesting %s", header.phase, phase.value)
            header.phase = phase.value
        header.timestamp = header.timestamp or self._clock()
        header.status = header.status or ArtifactStatus.FINAL
        header.repos = header.repos or list(session.repos)
        return artifact

    def ingest(self, session: Session, phase: Phase, source: Path, *, attempt: int | None = None) -> IngestResult:
        artifact = self.normalize(artifacts.load(source), session, phase)
        try:
            artifacts.validate(artifact, phase)
        except ArtifactValidationError as exc:
            logger.warning("Validation warning for %s: %s", session.id, exc)

        path = self.artifacts.store_session_level(artifact)
        result = IngestResult(artifact=artifact, path=path)
        if attempt is not None and phase.value in artifacts.VERSIONED_PHASES:
            result.version_path = self.artifacts.store_version(artifact, phase, attempt)

        extracted = extract_from_artifact(artifact)
        if extracted:
            result.capsules = self.capsules.store_many(session.id, extracted)
        logger.info("Stored %s artifact for %s (%d capsules)", phase.value, session.id, len(result.capsules))
        return result

    @staticmethod
    def cleanup(work_dir: Path) -> None:
        if work_dir.is_dir():
            shutil.rmtree(work_dir)
