from __future__ import annotations

import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from . import artifacts
from .artifacts import ArtifactStore
from .capsules import CapsuleStore
from .errors import ArtifactNotFoundError, ArtifactParseError
from .ingest import ArtifactIngestor
from .interrupts import InterruptSignal
from .models import (
    AgentOutcome,
    AgentRequest,
    Artifact,
    ExecutionOutcome,
    InvokeMode,
    Phase,
    Session,
    SessionMode,
    SessionStatus,
    VerifyDecision,
)
from .phases import current_phase, sequence_for, sequence_from, spec_for
from .prompts import PromptBuilder
from .recall import CapsuleRecall
from .repos import RepoRegistry
from .runtime import AgentRuntime, build_runtime, read_repo_requests
from .session import SessionStore
from .settings import RuntimeSettings
from .state_store import CardHome
from .ui import ConsolePrompt, OperatorPrompt, Spinner

logger = logging.getLogger(__name__)

# Statuses walked through without running a phase when the table has no direct edge.
_BRIDGES: dict[tuple[SessionStatus, SessionStatus], tuple[SessionStatus, ...]] = {
    (SessionStatus.REVIEWING, SessionStatus.EXECUTING): (SessionStatus.APPROVED,),
    (SessionStatus.VERIFYING, SessionStatus.RECORDING): (SessionStatus.SIMPLIFYING,),
}

_PRIOR_ORDER = (
    Phase.INVESTIGATE,
    Phase.PLAN,
    Phase.REVIEW,
    Phase.EXECUTE,
    Phase.VERIFY,
    Phase.CONCLUDE,
    Phase.RECORD,
)

_NEXT_LABELS = {
    Phase.INVESTIGATE: "planning",
    Phase.SIMPLIFY: "recording",
    Phase.RECORD: "completion",
}

REEXECUTE_REASON = "Failed verification - re-executing"
REPO_REQUEST_PHASES = frozenset({Phase.INVESTIGATE, Phase.EXECUTE})


class RunResult(str, Enum):
    PROCEED = "proceed"
    PAUSED = "paused"
    COMPLETED = "completed"


class ExecuteLoopState(TypedDict, total=False):
    session_id: str
    resume_verify: bool
    first: bool
    decision: str
    paused: bool


class PhaseOrchestrator:
    """Drives a session through its phase sequence.

    Phases run strictly in order. The execute/verify pair is a LangGraph
    ``StateGraph`` that loops until the operator accepts or pauses. Operator
    interrupts are honoured right after the session enters a phase status, so
    the paused session resumes into that phase. Checkpoints sit at phase
    entry, at the top of each loop iteration and at verify entry.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        sessions: SessionStore,
        artifact_store: ArtifactStore,
        capsules: CapsuleStore,
        runtime: AgentRuntime,
        prompts: PromptBuilder,
        prompter: OperatorPrompt,
        interrupt: InterruptSignal | None = None,
        ingestor: ArtifactIngestor | None = None,
        spinner_factory: Callable[[str], Any] = Spinner,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.artifacts = artifact_store
        self.capsules = capsules
        self.runtime = runtime
        self.prompts = prompts
        self.prompter = prompter
        self.interrupt = interrupt if interrupt is not None else InterruptSignal()
        self.ingestor = ingestor if ingestor is not None else ArtifactIngestor(artifact_store, capsules)
        self._spinner_factory = spinner_factory
        self.execute_graph = self._build_execute_graph().compile()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        runtime: AgentRuntime | None = None,
        prompter: OperatorPrompt | None = None,
        interrupt: InterruptSignal | None = None,
    ) -> "PhaseOrchestrator":
        home = CardHome(settings.home_path)
        home.ensure_structure()
        repos = RepoRegistry(home)
        capsule_store = CapsuleStore(home)
        artifact_store = ArtifactStore(home)
        sessions = SessionStore(home, repos=repos, author=settings.author)
        prompts = PromptBuilder(
            repos,
            recall=CapsuleRecall(capsule_store, sessions),
            recall_max_capsules=settings.recall_max_capsules,
            recall_max_tokens=settings.recall_max_tokens,
        )
        return cls(
            settings=settings,
            sessions=sessions,
            artifact_store=artifact_store,
            capsules=capsule_store,
            runtime=runtime if runtime is not None else build_runtime(settings),
            prompts=prompts,
            prompter=prompter if prompter is not None else ConsolePrompt(),
            interrupt=interrupt,
        )

    # -- entry points ----------------------------------------------------

    def run_session(self, session_id: str) -> RunResult:
        session = self.sessions.get(session_id)
        return self.run_from_phase(session_id, sequence_for(session.mode)[0])

    def resume_session(self, session_id: str) -> RunResult:
        """Restore a paused session (or pick up a crashed one) at the phase its status records."""
        session = self.sessions.resume(session_id)
        phase = current_phase(session.status)
        if session.mode is SessionMode.QUICKFIX and phase is Phase.SIMPLIFY:
            phase = Phase.RECORD
        logger.info("Resuming session %s at %s", session.id, phase.value)
        return self.run_from_phase(session_id, phase)

    def run_from_phase(self, session_id: str, phase: Phase | str) -> RunResult:
        start = spec_for(phase).phase
        session = self.sessions.get(session_id)
        for step in sequence_from(session.mode, start):
            if step is Phase.EXECUTE:
                result = self.run_execute_loop(session_id, resume_verify=start is Phase.VERIFY)
            else:
                result = self.run_phase(session_id, step)
            if result is RunResult.PAUSED:
                return result
        self.complete_session(session_id)
        return RunResult.COMPLETED

    # -- single phases ---------------------------------------------------

    def run_phase(self, session_id: str, phase: Phase) -> RunResult:
        """Run one phase outside the execute/verify loop, including its approval gate."""
        spec = spec_for(phase)
        session = self._advance(session_id, spec.status)
        if self._interrupted(session_id):
            return RunResult.PAUSED
        if self._invoke_and_ingest(session, phase) is RunResult.PAUSED:
            return RunResult.PAUSED

        if self._needs_approval(phase):
            next_label = _NEXT_LABELS.get(phase, "the next phase")
            if not self.prompter.confirm_continue(phase.value, next_label):
                self._pause(session_id, f"Stopped after {phase.value}")
                return RunResult.PAUSED
        self.prompter.notify(f"{phase.value} phase complete")
        return RunResult.PROCEED

    def complete_session(self, session_id: str) -> Session:
        """Final bookkeeping once record has run: tag enrichment, cleanup, ``completed``."""
        enriched = self.capsules.enrich_tags_from_manifest(session_id)
        if enriched:
            logger.info("Tagged %d capsules from the file manifest of %s", enriched, session_id)
        self._close_changes(session_id)
        self.artifacts.cleanup_intermediate(session_id)
        work_dir = self.settings.work_root_path / session_id
        if work_dir.is_dir():
            shutil.rmtree(work_dir)
        session = self.sessions.complete(session_id)
        self.prompter.notify(f"Session {session_id} completed")
        return session

    def _close_changes(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        ledger = None
        if self.artifacts.exists(session_id, Phase.RECORD):
            ledger = self._load_quietly(self.artifacts.session_path(session_id, Phase.RECORD))
        for repo_id in session.repos:
            names: list[str] = []
            if ledger is not None:
                names.append(self.artifacts.store(ledger, repo_id).name)
            try:
                change = self.sessions.changes.finalize(session_id, repo_id, names)
            except FileNotFoundError as exc:
                logger.warning("Repo %s of %s unavailable at completion: %s", repo_id, session_id, exc)
                continue
            logger.info("Change %s/%s closed at %s", session_id, repo_id, change.final_commit or "no HEAD")

    def work_dir(self, session_id: str, phase: Phase) -> Path:
        return self.settings.work_root_path / session_id / phase.value

    def _needs_approval(self, phase: Phase) -> bool:
        if not spec_for(phase).approval_gate:
            return False
        if phase is Phase.SIMPLIFY:
            return not self.settings.auto_continue_simplify
        if phase is Phase.RECORD:
            return not self.settings.auto_continue_record
        return True

    def _invoke_and_ingest(self, session: Session, phase: Phase, *, attempt: int | None = None) -> RunResult:
        work_dir = self.work_dir(session.id, phase)
        outcome = self._invoke(session, phase, work_dir)
        if outcome is AgentOutcome.INTERRUPTED:
            if phase is Phase.EXECUTE:
                self._set_outcome(session.id, ExecutionOutcome.INTERRUPTED, "agent run interrupted")
            self._pause(session.id, f"Interrupted during {phase.value}")
            return RunResult.PAUSED

        if spec_for(phase).produces_artifact:
            repo_root = self._repo_root(session)
            source = self.ingestor.locate(work_dir, phase, repo_root)
            if source is None:
                searched = [str(work_dir)] + ([str(repo_root)] if repo_root else [])
                raise ArtifactNotFoundError(phase.value, searched)
            result = self.ingestor.ingest(session, phase, source, attempt=attempt)
            self.prompter.notify(f"Artifact stored at {result.path}")
        if phase in REPO_REQUEST_PHASES:
            self._add_requested_repos(session.id, work_dir)
        self.ingestor.cleanup(work_dir)
        return RunResult.PROCEED

    def _add_requested_repos(self, session_id: str, work_dir: Path) -> list[str]:
        requests = read_repo_requests(work_dir)
        if not requests:
            return []
        current = set(self.sessions.get(session_id).repos)
        added: list[str] = []
        for request in requests:
            try:
                repo = self.sessions.repos.resolve(path=request.path, remote=request.remote)
            except (OSError, ValueError) as exc:
                logger.warning("Skipping repo request (%s): %s", request.label, exc)
                continue
            if repo.id in current:
                continue
            current.add(repo.id)
            added.append(repo.id)
            reason = f": {request.reason}" if request.reason else ""
            self.prompter.notify(f"Added repo {repo.name} ({repo.id[:8]}) to session{reason}")
        if added:
            self.sessions.add_repos(session_id, added)
        return added

    def _invoke(self, session: Session, phase: Phase, work_dir: Path) -> AgentOutcome:
        spec = spec_for(phase)
        work_dir.mkdir(parents=True, exist_ok=True)
        repo_root = self._repo_root(session) or work_dir
        non_interactive = spec.mode is InvokeMode.NON_INTERACTIVE
        request = AgentRequest(
            session_id=session.id,
            phase=phase,
            system_prompt=self.prompts.system_prompt(session, phase, work_dir, self._prior_artifacts(session, phase)),
            initial_message=self.prompts.initial_message(session, phase, non_interactive=non_interactive),
            working_dir=repo_root,
            output_dir=work_dir,
            allowed_tools=spec.allowed_tools,
            mode=spec.mode,
        )
        logger.info("Invoking %s for %s (%s)", self.runtime.name, phase.value, spec.mode.value)
        if non_interactive:
            with self._spinner_factory(f"Running {phase.value.upper()} phase..."):
                return self.runtime.invoke(request)
        return self.runtime.invoke(request)

    def _repo_root(self, session: Session) -> Path | None:
        try:
            return Path(self.sessions.repos.get(session.primary_repo).path)
        except FileNotFoundError as exc:
            logger.warning("Primary repo of %s unavailable: %s", session.id, exc)
            return None

    def _prior_artifacts(self, session: Session, phase: Phase) -> list[Artifact]:
        prior: list[Artifact] = []
        seen: set[str] = set()
        for earlier in _PRIOR_ORDER:
            if earlier is phase:
                break
            filename = artifacts.phase_filename(earlier)
            if filename in seen or not self.artifacts.exists(session.id, earlier):
                continue
            seen.add(filename)
            loaded = self._load_quietly(self.artifacts.session_path(session.id, earlier))
            if loaded is not None:
                prior.append(loaded)

        if phase is Phase.EXECUTE and len(session.execution_history) > 1:
            session_dir = self.sessions.home.session_dir(session.id)
            for attempt in range(1, len(session.execution_history)):
                for versioned in (Phase.EXECUTE, Phase.VERIFY):
                    path = session_dir / artifacts.version_filename(versioned, attempt)
                    loaded = self._load_quietly(path) if path.is_file() else None
                    if loaded is not None:
                        prior.append(loaded)
        return prior

    @staticmethod
    def _load_quietly(path: Path) -> Artifact | None:
        try:
            return artifacts.load(path)
        except (OSError, ArtifactParseError) as exc:
            logger.warning("Skipping unreadable prior artifact %s: %s", path, exc)
            return None

    # -- status helpers --------------------------------------------------

    def _advance(self, session_id: str, target: SessionStatus) -> Session:
        session = self.sessions.get(session_id)
        for bridge in _BRIDGES.get((session.status, target), ()):
            logger.info("Session %s passing through %s", session_id, bridge.value)
            self.sessions.transition(session_id, bridge)
        return self.sessions.transition(session_id, target)

    def _interrupted(self, session_id: str) -> bool:
        if not self.interrupt.is_set():
            return False
        self.interrupt.clear()
        self._pause(session_id, "Interrupted")
        return True

    def _pause(self, session_id: str, reason: str) -> None:
        self.sessions.pause(session_id)
        self.prompter.notify(f"{reason}. Session {session_id} paused; resume with 'card resume {session_id}'.")

    def _set_outcome(self, session_id: str, outcome: ExecutionOutcome, reason: str = "") -> None:
        session = self.sessions.get(session_id)
        if not session.execution_history:
            logger.warning("Session %s has no execution attempt to mark %s", session_id, outcome.value)
            return
        session.update_last_execution_outcome(outcome, reason)
        self.sessions.update(session)

    # -- execute/verify loop ----------------------------------------------

    def run_execute_loop(self, session_id: str, *, resume_verify: bool = False) -> RunResult:
        initial_state: ExecuteLoopState = {
            "session_id": session_id,
            "resume_verify": resume_verify,
            "first": True,
            "paused": False,
        }
        result = self.execute_graph.invoke(
            initial_state,
            config={"recursion_limit": self.settings.recursion_limit},
        )
        return RunResult.PAUSED if result.get("paused") else RunResult.PROCEED

    def _build_execute_graph(self) -> StateGraph:
        graph = StateGraph(ExecuteLoopState)
        graph.add_node("start_attempt", self._start_attempt_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("verify", self._verify_node)
        graph.add_node("decide", self._decide_node)

        graph.add_conditional_edges(
            START,
            self._entry_route,
            {"start_attempt": "start_attempt", "verify": "verify"},
        )
        graph.add_conditional_edges("start_attempt", self._halt_route("execute"), {"execute": "execute", "end": END})
        graph.add_conditional_edges("execute", self._halt_route("verify"), {"verify": "verify", "end": END})
        graph.add_conditional_edges("verify", self._halt_route("decide"), {"decide": "decide", "end": END})
        graph.add_conditional_edges(
            "decide",
            self._decide_route,
            {"start_attempt": "start_attempt", "end": END},
        )
        return graph

    @staticmethod
    def _entry_route(state: ExecuteLoopState) -> str:
        return "verify" if state.get("resume_verify") else "start_attempt"

    @staticmethod
    def _halt_route(next_node: str) -> Callable[[ExecuteLoopState], str]:
        def route(state: ExecuteLoopState) -> str:
            return "end" if state.get("paused") else next_node

        return route

    @staticmethod
    def _decide_route(state: ExecuteLoopState) -> str:
        if state.get("paused") or state.get("decision") != VerifyDecision.REEXECUTE.value:
            return "end"
        return "start_attempt"

    def _start_attempt_node(self, state: ExecuteLoopState) -> dict[str, Any]:
        session_id = state["session_id"]
        session = self.sessions.get(session_id)
        if not (state.get("first") and session.status is SessionStatus.EXECUTING):
            session = self._advance(session_id, SessionStatus.EXECUTING)
        elif session.execution_history and session.execution_history[-1].outcome is ExecutionOutcome.IN_PROGRESS:
            session.update_last_execution_outcome(ExecutionOutcome.INTERRUPTED, "run ended before verification")
            session = self.sessions.update(session)
        if self._interrupted(session_id):
            return {"paused": True, "first": False}
        attempt = session.add_execution_attempt()
        self.sessions.update(session)
        logger.info("Session %s execution attempt %d", session_id, attempt.attempt)
        return {"first": False}

    def _execute_node(self, state: ExecuteLoopState) -> dict[str, Any]:
        session = self.sessions.get(state["session_id"])
        result = self._invoke_and_ingest(session, Phase.EXECUTE, attempt=len(session.execution_history))
        return {"paused": result is RunResult.PAUSED}

    def _verify_node(self, state: ExecuteLoopState) -> dict[str, Any]:
        session_id = state["session_id"]
        session = self._advance(session_id, SessionStatus.VERIFYING)
        if self._interrupted(session_id):
            return {"paused": True}
        attempt = len(session.execution_history) or None
        result = self._invoke_and_ingest(session, Phase.VERIFY, attempt=attempt)
        return {"paused": result is RunResult.PAUSED, "first": False}

    def _decide_node(self, state: ExecuteLoopState) -> dict[str, Any]:
        session_id = state["session_id"]
        session = self.sessions.get(session_id)
        attempts = len(session.execution_history)
        decision = self.prompter.verify_decision(attempts)

        if decision is VerifyDecision.ACCEPT:
            verified = self.capsules.verify_session_capsules(session_id, Phase.EXECUTE.value)
            if verified:
                logger.info("Verified %d execute capsules for %s", verified, session_id)
            self._set_outcome(session_id, ExecutionOutcome.COMPLETED)
            return {"decision": decision.value}

        if decision is VerifyDecision.REEXECUTE:
            if attempts >= self.settings.max_execution_attempts:
                logger.warning(
                    "Session %s reached %d execution attempts; pausing instead of re-executing",
                    session_id,
                    attempts,
                )
                self._pause(session_id, f"Execution attempt limit ({attempts}) reached")
                return {"decision": decision.value, "paused": True}
            self.capsules.challenge_phase_capsules(session_id, Phase.EXECUTE.value, REEXECUTE_REASON)
            self._set_outcome(session_id, ExecutionOutcome.FAILED_VERIFICATION, "Re-execution requested")
            self.prompter.notify("Re-executing with verification feedback")
            return {"decision": decision.value}

        self._pause(session_id, "Stopped after verify")
        return {"decision": decision.value, "paused": True}
