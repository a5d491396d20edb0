"""Entry point for `python -m card_pipeline` and the `card` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Iterable

from card_pipeline.capsules import QUICKFIX_SEED_PHASE
from card_pipeline.errors import AgentInvocationError
from card_pipeline.interrupts import InterruptSignal
from card_pipeline.models import CapsuleFilter, ChangeRecord, Session, SessionMode
from card_pipeline.orchestrator import PhaseOrchestrator, RunResult
from card_pipeline.recall import CapsuleRecall, RecallQuery, format_terminal
from card_pipeline.recovery import Recovery
from card_pipeline.settings import RuntimeSettings

HANDLED_ERRORS = (OSError, ValueError, LookupError, AgentInvocationError)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="card", description="Run phased engineering sessions through a coding agent")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    repo = commands.add_parser("repo", help="Manage registered repositories")
    repo_commands = repo.add_subparsers(dest="repo_command", required=True)
    repo_add = repo_commands.add_parser("add", help="Register a local repository")
    repo_add.add_argument("path", type=Path)
    repo_add.add_argument("--remote", default=None, help="Remote URL (default: git remote.origin.url)")
    repo_commands.add_parser("list", help="List registered repositories")

    new = commands.add_parser("new", help="Create a session and run it")
    new.add_argument("description")
    new.add_argument("--repo", dest="repos", action="append", required=True, help="Registered repo id (repeatable)")
    new.add_argument("--mode", default=SessionMode.STANDARD.value, choices=[mode.value for mode in SessionMode])
    new.add_argument("--context", default="", help="Extra context handed to every phase")
    new.add_argument("--seed", default=None, help="Quickfix only: record this as the seed decision")

    for name, help_text in (
        ("resume", "Resume a paused or interrupted session"),
        ("pause", "Pause a session"),
        ("abandon", "Abandon a session"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("session")

    status = commands.add_parser("status", help="Show session status")
    status.add_argument("session", nargs="?", default=None)

    capsules = commands.add_parser("capsules", help="List decision capsules")
    capsules.add_argument("--session", default=None)
    capsules.add_argument("--repo", default=None)
    capsules.add_argument("--phase", default=None)
    capsules.add_argument("--tag", default=None, help="Tag query: prefix-aware substring, e.g. file:src/ or table:*")
    capsules.add_argument("--file", dest="file_path", default=None, help="Match capsules tagged with this file path")
    capsules.add_argument("--include-invalidated", action="store_true")
    capsules.add_argument("--show-evolution", action="store_true")

    invalidate = commands.add_parser("invalidate", help="Invalidate a capsule")
    invalidate.add_argument("capsule")
    invalidate.add_argument("--reason", required=True)
    invalidate.add_argument("--learned", default="")
    invalidate.add_argument("--superseded-by", default="")

    recall = commands.add_parser("recall", help="Show decisions from earlier sessions")
    recall.add_argument("--file", dest="files", action="append", default=[], help="File path (repeatable)")
    recall.add_argument("--tag", dest="tags", action="append", default=[], help="Tag query (repeatable)")
    recall.add_argument("--query", default="", help="Text to find in question, choice or rationale")
    recall.add_argument("--repo", default="", help="Registered repo id")
    recall.add_argument("--limit", type=int, default=0, help="Maximum decisions to show")
    recall.add_argument("--include-invalidated", action="store_true")

    recover = commands.add_parser("recover", help="Report artifacts stranded by interrupted runs")
    recover.add_argument("--fix", action="store_true", help="Ingest the orphaned artifacts")
    return parser


def _describe(session: Session, changes: Iterable[ChangeRecord] = ()) -> str:
    lines = [
        f"id:          {session.id}",
        f"description: {session.description}",
        f"mode:        {session.mode.value}",
        f"status:      {session.status.value}",
        f"repos:       {', '.join(session.repos)}",
        f"created:     {session.created_at.isoformat()}",
    ]
    if session.previous_status is not None:
        lines.append(f"paused at:   {session.previous_status.value}")
    for attempt in session.execution_history:
        suffix = f" ({attempt.reason})" if attempt.reason else ""
        lines.append(f"attempt {attempt.attempt}:   {attempt.outcome.value}{suffix}")
    for change in changes:
        line = f"change {change.repo_id}: base {change.base_commit[:8] or '-'}"
        if change.final_commit:
            line += f" head {change.final_commit[:8]}"
        lines.append(line)
    return "\n".join(lines)


def _run(orchestrator: PhaseOrchestrator, interrupt: InterruptSignal, session_id: str, *, resume: bool) -> int:
    with interrupt:
        result = orchestrator.resume_session(session_id) if resume else orchestrator.run_session(session_id)
    print(f"session={session_id} result={result.value}")
    return 0 if result in (RunResult.COMPLETED, RunResult.PAUSED) else 1


def dispatch(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    interrupt = InterruptSignal()
    orchestrator = PhaseOrchestrator.from_settings(settings, interrupt=interrupt)
    sessions = orchestrator.sessions
    capsule_store = orchestrator.capsules

    if args.command == "repo":
        if args.repo_command == "add":
            repo = sessions.repos.register(args.path, remote_url=args.remote)
            print(f"{repo.id}  {repo.name}  {repo.path}")
        else:
            for repo in sessions.repos.list():
                print(f"{repo.id}  {repo.name}  {repo.path}  {repo.remote_url}")
        return 0

    if args.command == "new":
        mode = SessionMode(args.mode)
        if mode is SessionMode.QUICKFIX:
            session = sessions.create_quickfix(args.description, args.repos, context=args.context)
            if args.seed:
                capsule_store.record(
                    session.id,
                    QUICKFIX_SEED_PHASE,
                    session.description,
                    choice=args.seed,
                    repos=session.repos,
                )
        else:
            session = sessions.create(args.description, args.repos, mode=mode, context=args.context)
        print(f"Created session {session.id}")
        return _run(orchestrator, interrupt, session.id, resume=False)

    if args.command == "resume":
        return _run(orchestrator, interrupt, args.session, resume=True)

    if args.command == "pause":
        session = sessions.pause(args.session)
        print(f"Session {session.id} paused at {session.previous_status.value if session.previous_status else '?'}")
        return 0

    if args.command == "abandon":
        session = sessions.abandon(args.session)
        print(f"Session {session.id} abandoned")
        return 0

    if args.command == "status":
        if args.session:
            session = sessions.get(args.session)
            print(_describe(session, sessions.changes.list_for_session(session.id)))
            return 0
        for session in sessions.list():
            print(f"{session.id}  {session.status.value:<12}  {session.description}")
        return 0

    if args.command == "capsules":
        flt = CapsuleFilter(
            session_id=args.session,
            repo=args.repo,
            phase=args.phase,
            tag=args.tag,
            file_path=args.file_path,
            include_invalidated=args.include_invalidated,
            show_evolution=args.show_evolution,
        )
        for capsule in capsule_store.list(flt):
            print(f"{capsule.id}  [{capsule.status.value}] {capsule.phase}: {capsule.question} -> {capsule.choice}")
        return 0

    if args.command == "invalidate":
        capsule = capsule_store.invalidate(
            args.capsule,
            args.reason,
            learned=args.learned,
            superseded_by=args.superseded_by,
        )
        print(f"Capsule {capsule.id} invalidated")
        return 0

    if args.command == "recall":
        repo_path = sessions.repos.get(args.repo).path if args.repo else ""
        query = RecallQuery(
            files=tuple(args.files),
            repo_id=args.repo,
            repo_path=repo_path,
            tags=tuple(args.tags),
            text=args.query,
            max_capsules=args.limit,
            include_invalidated=args.include_invalidated,
        )
        print(format_terminal(CapsuleRecall(capsule_store, sessions).query(query)))
        return 0

    if args.command == "recover":
        recovery = Recovery(orchestrator)
        orphans = recovery.find_orphaned_artifacts()
        if not orphans:
            print("No orphaned artifacts")
            return 0
        for orphan in orphans:
            print(f"{orphan.session_id}  {orphan.phase.value}  {orphan.artifact_path}")
            if args.fix:
                status = recovery.recover_orphaned_artifact(orphan)
                print(f"  recovered; session is now {status.value}")
        return 0

    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = RuntimeSettings.from_env()
        return dispatch(args, settings)
    except HANDLED_ERRORS as exc:
        logging.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
