from contextlib import nullcontext
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable

import pytest

from card_pipeline.artifacts import ArtifactStore, phase_filename
from card_pipeline.capsules import CapsuleStore
from card_pipeline.interrupts import InterruptSignal
from card_pipeline.models import AgentOutcome, AgentRequest, Phase, Repo, VerifyDecision
from card_pipeline.orchestrator import PhaseOrchestrator
from card_pipeline.prompts import PromptBuilder
from card_pipeline.repos import RepoRegistry
from card_pipeline.session import SessionStore
from card_pipeline.settings import RuntimeSettings
from card_pipeline.state_store import CardHome


@pytest.fixture
def home(tmp_path: Path) -> CardHome:
    card_home = CardHome(tmp_path / "card-home")
    card_home.ensure_structure()
    return card_home


@pytest.fixture
def repo(home: CardHome, tmp_path: Path) -> Repo:
    path = tmp_path / "repo-a"
    path.mkdir()
    return RepoRegistry(home).register(path, remote_url="git@github.com:acme/repo-a.git")


@pytest.fixture
def sessions(home: CardHome) -> SessionStore:
    return SessionStore(home, author="tester")


BODIES = {
    Phase.INVESTIGATE: "## Executive Summary\nThe cache is missing.\n",
    Phase.PLAN: "## Implementation Steps\n1. Add the cache\n",
    Phase.REVIEW: "## Implementation Steps\n1. Add the cache with a TTL\n",
    Phase.EXECUTE: (
        "## Execution Summary\nAdded the cache.\n\n"
        "### Decision: Where does the cache live?\n"
        "- **Choice:** in-process LRU\n"
        "- **Alternatives:** redis, in-process LRU\n"
    ),
    Phase.VERIFY: "## Verification Outcome\nTests pass.\n\n## Issues Identified\nNone.\n",
    Phase.CONCLUDE: "## Findings\nCaching helps.\n\n## Recommendations\nAdd it.\n",
    Phase.RECORD: "## Summary\nCache added.\n\n## File Manifest\n- src/cache.py: new cache\n",
}


class ScriptedRuntime:
    """Agent stand-in that writes a headed artifact for every phase it is asked to run."""

    name = "scripted"

    def __init__(self, *, interrupt_phases: Iterable[Phase] = (), silent_phases: Iterable[Phase] = ()) -> None:
        self.requests: list[AgentRequest] = []
        self.interrupt_phases = set(interrupt_phases)
        self.silent_phases = set(silent_phases)
        self.on_invoke: Callable[[AgentRequest], None] | None = None

    @property
    def phases(self) -> list[Phase]:
        return [request.phase for request in self.requests]

    def invoke(self, request: AgentRequest) -> AgentOutcome:
        self.requests.append(request)
        if self.on_invoke is not None:
            self.on_invoke(request)
        if request.phase in self.interrupt_phases:
            return AgentOutcome.INTERRUPTED
        if request.phase in BODIES and request.phase not in self.silent_phases:
            text = f"---\nsession: {request.session_id}\nphase: {request.phase.value}\n---\n{BODIES[request.phase]}"
            (request.output_dir / phase_filename(request.phase)).write_text(text, encoding="utf-8")
        return AgentOutcome.SUCCESS


class ScriptedPrompter:
    """Operator stand-in answering from queues; defaults are proceed and accept."""

    def __init__(
        self,
        *,
        confirms: Iterable[bool] = (),
        decisions: Iterable[VerifyDecision] = (),
    ) -> None:
        self.confirms = list(confirms)
        self.decisions = list(decisions)
        self.confirmed: list[tuple[str, str]] = []
        self.verified_attempts: list[int] = []
        self.messages: list[str] = []

    def confirm_continue(self, completed_phase: str, next_phase: str) -> bool:
        self.confirmed.append((completed_phase, next_phase))
        return self.confirms.pop(0) if self.confirms else True

    def verify_decision(self, attempt: int) -> VerifyDecision:
        self.verified_attempts.append(attempt)
        return self.decisions.pop(0) if self.decisions else VerifyDecision.ACCEPT

    def notify(self, message: str) -> None:
        self.messages.append(message)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(home=str(tmp_path / "card-home"), work_root=str(tmp_path / "work"), author="tester")


@pytest.fixture
def make_orchestrator(
    home: CardHome, sessions: SessionStore, settings: RuntimeSettings
) -> Callable[..., PhaseOrchestrator]:
    def build(
        runtime: ScriptedRuntime | None = None,
        prompter: ScriptedPrompter | None = None,
        *,
        interrupt: InterruptSignal | None = None,
        **overrides: object,
    ) -> PhaseOrchestrator:
        return PhaseOrchestrator(
            settings=replace(settings, **overrides),
            sessions=sessions,
            artifact_store=ArtifactStore(home),
            capsules=CapsuleStore(home),
            runtime=runtime or ScriptedRuntime(),
            prompts=PromptBuilder(sessions.repos, include_git_log=False),
            prompter=prompter or ScriptedPrompter(),
            interrupt=interrupt,
            spinner_factory=lambda message: nullcontext(),
        )

    return build
