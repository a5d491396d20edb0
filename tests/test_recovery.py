from typing import Callable

from conftest import BODIES

from card_pipeline.models import Phase, Repo, Session, SessionMode, SessionStatus
from card_pipeline.orchestrator import PhaseOrchestrator
from card_pipeline.recovery import Recovery
from card_pipeline.session import SessionStore

MakeOrchestrator = Callable[..., PhaseOrchestrator]


def _strand(
    orchestrator: PhaseOrchestrator,
    sessions: SessionStore,
    session: Session,
    status: SessionStatus,
    phase: Phase,
    *,
    filename: str | None = None,
    header: bool = True,
) -> None:
    session.status = status
    sessions.update(session)
    work_dir = orchestrator.work_dir(session.id, phase)
    work_dir.mkdir(parents=True)
    text = BODIES[phase]
    if header:
        text = f"---\nsession: {session.id}\nphase: {phase.value}\n---\n{text}"
    name = filename or {
        Phase.PLAN: "implementation_guide.md",
        Phase.VERIFY: "verification_notes.md",
        Phase.INVESTIGATE: "investigation_summary.md",
        Phase.RECORD: "milestone_ledger.md",
    }[phase]
    (work_dir / name).write_text(text, encoding="utf-8")


def test_orphaned_plan_is_ingested_and_session_advanced(
    make_orchestrator: MakeOrchestrator, sessions: SessionStore, repo: Repo
) -> None:
    orchestrator = make_orchestrator()
    session = sessions.create("Add a cache", [repo.id])
    _strand(orchestrator, sessions, session, SessionStatus.PLANNING, Phase.PLAN)
    recovery = Recovery(orchestrator)

    (orphan,) = recovery.find_orphaned_artifacts()
    assert orphan.session_id == session.id
    assert orphan.phase is Phase.PLAN

    assert recovery.recover_orphaned_artifact(orphan) is SessionStatus.REVIEWING
    assert orchestrator.artifacts.exists(session.id, Phase.PLAN)
    assert not orphan.work_dir.exists()
    assert recovery.find_orphaned_artifacts() == []


def test_headerless_orphan_is_found_and_normalized(
    make_orchestrator: MakeOrchestrator, sessions: SessionStore, repo: Repo
) -> None:
    orchestrator = make_orchestrator()
    session = sessions.create("Add a cache", [repo.id])
    _strand(orchestrator, sessions, session, SessionStatus.PLANNING, Phase.PLAN, filename="notes.md", header=False)

    ((orphan, status),) = Recovery(orchestrator).recover_all()
    assert orphan.artifact_path.name == "notes.md"
    assert status is SessionStatus.REVIEWING
    stored = orchestrator.artifacts.load(session.id, Phase.PLAN)
    assert stored.header.session == session.id
    assert stored.header.repos == [repo.id]


def test_already_ingested_artifact_is_not_an_orphan(
    make_orchestrator: MakeOrchestrator, sessions: SessionStore, repo: Repo
) -> None:
    orchestrator = make_orchestrator()
    session = sessions.create("Add a cache", [repo.id])
    _strand(orchestrator, sessions, session, SessionStatus.PLANNING, Phase.PLAN)
    source = orchestrator.work_dir(session.id, Phase.PLAN) / "implementation_guide.md"
    orchestrator.ingestor.ingest(sessions.get(session.id), Phase.PLAN, source)

    assert Recovery(orchestrator).find_orphaned_artifacts() == []


def test_orphaned_verification_keeps_status_and_versions_copy(
    make_orchestrator: MakeOrchestrator, sessions: SessionStore, repo: Repo
) -> None:
    orchestrator = make_orchestrator()
    session = sessions.create_quickfix("Fix the banner", [repo.id])
    session.add_execution_attempt()
    _strand(orchestrator, sessions, session, SessionStatus.VERIFYING, Phase.VERIFY)

    ((_, status),) = Recovery(orchestrator).recover_all()
    assert status is SessionStatus.VERIFYING
    assert (sessions.home.session_dir(session.id) / "verification_notes_v1.md").is_file()


def test_research_investigation_recovers_to_concluding(
    make_orchestrator: MakeOrchestrator, sessions: SessionStore, repo: Repo
) -> None:
    orchestrator = make_orchestrator()
    session = sessions.create("Is caching worth it?", [repo.id], mode=SessionMode.RESEARCH)
    _strand(orchestrator, sessions, session, SessionStatus.INVESTIGATING, Phase.INVESTIGATE)

    ((_, status),) = Recovery(orchestrator).recover_all()
    assert status is SessionStatus.CONCLUDING


def test_orphaned_ledger_completes_session(
    make_orchestrator: MakeOrchestrator, sessions: SessionStore, repo: Repo
) -> None:
    orchestrator = make_orchestrator()
    session = sessions.create_quickfix("Fix the banner", [repo.id])
    _strand(orchestrator, sessions, session, SessionStatus.RECORDING, Phase.RECORD)

    ((_, status),) = Recovery(orchestrator).recover_all()
    assert status is SessionStatus.COMPLETED
    assert sessions.get(session.id).completed_at is not None


def test_paused_and_simplifying_sessions_are_skipped(
    make_orchestrator: MakeOrchestrator, sessions: SessionStore, repo: Repo
) -> None:
    orchestrator = make_orchestrator()
    paused = sessions.create("Paused", [repo.id])
    _strand(orchestrator, sessions, paused, SessionStatus.PLANNING, Phase.PLAN)
    sessions.pause(paused.id)
    simplifying = sessions.create("Simplifying", [repo.id])
    simplifying.status = SessionStatus.SIMPLIFYING
    sessions.update(simplifying)
    stray = orchestrator.work_dir(simplifying.id, Phase.SIMPLIFY)
    stray.mkdir(parents=True)
    (stray / "scratch.md").write_text("notes", encoding="utf-8")

    assert Recovery(orchestrator).find_orphaned_artifacts() == []
