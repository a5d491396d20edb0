from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from . import artifacts
from .ingest import find_markdown_artifact
from .models import Phase, SessionMode, SessionStatus
from .orchestrator import PhaseOrchestrator
from .phases import NEXT_STATUS_AFTER, current_phase, spec_for

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = frozenset(
    {
        SessionStatus.INVESTIGATING,
        SessionStatus.PLANNING,
        SessionStatus.REVIEWING,
        SessionStatus.EXECUTING,
        SessionStatus.VERIFYING,
        SessionStatus.SIMPLIFYING,
        SessionStatus.RECORDING,
        SessionStatus.CONCLUDING,
    }
)


@dataclass(frozen=True)
class OrphanedArtifact:
    """Agent output left in a phase working directory by a run that never ingested it."""

    session_id: str
    phase: Phase
    work_dir: Path
    artifact_path: Path


class Recovery:
    """Finds and ingests artifacts stranded by a crash between agent exit and ingestion."""

    def __init__(self, orchestrator: PhaseOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.sessions = orchestrator.sessions
        self.artifacts = orchestrator.artifacts
        self.ingestor = orchestrator.ingestor

    def find_orphaned_artifacts(self) -> list[OrphanedArtifact]:
        orphans: list[OrphanedArtifact] = []
        for session in self.sessions.list():
            if session.status not in RECOVERABLE_STATUSES:
                continue
            phase = current_phase(session.status)
            if not spec_for(phase).produces_artifact:
                continue
            work_dir = self.orchestrator.work_dir(session.id, phase)
            candidate = work_dir / artifacts.phase_filename(phase)
            if not candidate.is_file():
                candidate = find_markdown_artifact(work_dir, require_header=False)
            if candidate is None:
                continue
            if self._already_ingested(session.id, phase, candidate):
                continue
            orphans.append(OrphanedArtifact(session.id, phase, work_dir, candidate))
        return orphans

    def _already_ingested(self, session_id: str, phase: Phase, candidate: Path) -> bool:
        stored = self.artifacts.session_path(session_id, phase)
        if not stored.is_file():
            return False
        if phase.value in artifacts.VERSIONED_PHASES:
            return candidate.stat().st_mtime <= stored.stat().st_mtime
        return True

    def recover_orphaned_artifact(self, orphan: OrphanedArtifact) -> SessionStatus:
        """Ingest ``orphan`` through the live ingestion path and advance its session.

        Returns:
            The session status after recovery.
        """
        session = self.sessions.get(orphan.session_id)
        attempt = len(session.execution_history) or None
        self.ingestor.ingest(session, orphan.phase, orphan.artifact_path, attempt=attempt)
        self.ingestor.cleanup(orphan.work_dir)
        logger.info("Recovered %s artifact for %s", orphan.phase.value, session.id)

        if orphan.phase is Phase.RECORD:
            return self.orchestrator.complete_session(session.id).status
        target = NEXT_STATUS_AFTER.get(orphan.phase)
        if orphan.phase is Phase.INVESTIGATE and session.mode is SessionMode.RESEARCH:
            target = SessionStatus.CONCLUDING
        if target is None:
            return session.status
        return self.sessions.transition(session.id, target).status

    def recover_all(self) -> list[tuple[OrphanedArtifact, SessionStatus]]:
        return [(orphan, self.recover_orphaned_artifact(orphan)) for orphan in self.find_orphaned_artifacts()]
