from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class SessionStatus(str, Enum):
    STARTED = "started"
    INVESTIGATING = "investigating"
    PLANNING = "planning"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    SIMPLIFYING = "simplifying"
    RECORDING = "recording"
    CONCLUDING = "concluding"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    PAUSED = "paused"


class SessionMode(str, Enum):
    STANDARD = "standard"
    QUICKFIX = "quickfix"
    RESEARCH = "research"


class ExecutionOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED_VERIFICATION = "failed_verification"
    INTERRUPTED = "interrupted"


class Phase(str, Enum):
    INVESTIGATE = "investigate"
    PLAN = "plan"
    REVIEW = "review"
    EXECUTE = "execute"
    VERIFY = "verify"
    SIMPLIFY = "simplify"
    CONCLUDE = "conclude"
    RECORD = "record"


SESSION_TRANSITIONS: Mapping[SessionStatus, frozenset[SessionStatus]] = MappingProxyType(
    {
        SessionStatus.STARTED: frozenset({SessionStatus.INVESTIGATING}),
        SessionStatus.INVESTIGATING: frozenset({SessionStatus.PLANNING, SessionStatus.CONCLUDING}),
        SessionStatus.PLANNING: frozenset({SessionStatus.REVIEWING}),
        SessionStatus.REVIEWING: frozenset({SessionStatus.APPROVED}),
        SessionStatus.APPROVED: frozenset({SessionStatus.EXECUTING}),
        SessionStatus.EXECUTING: frozenset({SessionStatus.VERIFYING}),
        SessionStatus.VERIFYING: frozenset({SessionStatus.SIMPLIFYING, SessionStatus.EXECUTING}),
        SessionStatus.SIMPLIFYING: frozenset({SessionStatus.RECORDING}),
        SessionStatus.CONCLUDING: frozenset({SessionStatus.RECORDING}),
        SessionStatus.RECORDING: frozenset({SessionStatus.COMPLETED}),
    }
)

TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset({SessionStatus.COMPLETED, SessionStatus.ABANDONED})


class ExecutionAttempt(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attempt: int = Field(ge=1)
    started_at: datetime
    outcome: ExecutionOutcome = ExecutionOutcome.IN_PROGRESS
    reason: str = ""


class Session(BaseModel):
    """Persisted session record (``session.json``)."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    description: str
    context: str = ""
    mode: SessionMode = SessionMode.STANDARD
    status: SessionStatus = SessionStatus.STARTED
    previous_status: SessionStatus | None = None
    repos: list[str] = Field(min_length=1)
    created_at: datetime
    updated_at: datetime
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    author: str = ""
    import_source: str | None = None
    supersedes: list[str] = Field(default_factory=list)
    extends: list[str] = Field(default_factory=list)
    execution_history: list[ExecutionAttempt] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def primary_repo(self) -> str:
        return self.repos[0]

    def add_execution_attempt(self, *, started_at: datetime | None = None) -> ExecutionAttempt:
        """Append a new in-progress attempt numbered after the existing history."""
        attempt = ExecutionAttempt(
            attempt=len(self.execution_history) + 1,
            started_at=started_at or utc_now(),
        )
        self.execution_history.append(attempt)
        return attempt

    def update_last_execution_outcome(self, outcome: ExecutionOutcome, reason: str = "") -> ExecutionAttempt:
        if not self.execution_history:
            raise ValueError(f"session {self.id} has no execution attempts to update")
        last = self.execution_history[-1]
        last.outcome = outcome
        last.reason = reason
        return last


class ArtifactStatus(str, Enum):
    DRAFT = "draft"
    FINAL = "final"


class ArtifactHeader(BaseModel):
    """YAML frontmatter carried at the top of a phase artifact."""

    model_config = ConfigDict(extra="ignore")

    session: str = ""
    repos: list[str] = Field(default_factory=list)
    phase: str = ""
    timestamp: datetime | None = None
    status: ArtifactStatus | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.session or self.repos or self.phase or self.timestamp or self.status)


@dataclass
class Artifact:
    header: ArtifactHeader = field(default_factory=ArtifactHeader)
    body: str = ""
    path: Path | None = None


class CapsuleType(str, Enum):
    DECISION = "decision"
    FINDING = "finding"


class CapsuleStatus(str, Enum):
    HYPOTHESIS = "hypothesis"
    VERIFIED = "verified"
    INVALIDATED = "invalidated"


class Significance(str, Enum):
    ARCHITECTURAL = "architectural"
    IMPLEMENTATION = "implementation"
    CONTEXT = "context"


class Origin(str, Enum):
    HUMAN = "human"
    AGENT = "agent"


class Confirmation(str, Enum):
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"


class Challenge(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: datetime
    reason: str
    resolution: str = "pending"


class Capsule(BaseModel):
    """A recorded decision or finding with verification status and provenance."""

    model_config = ConfigDict(extra="forbid")

    id: str
    session_id: str
    phase: str
    question: str
    choice: str = ""
    rationale: str = ""
    alternatives: list[str] = Field(default_factory=list)
    origin: Origin = Origin.AGENT
    status: CapsuleStatus = CapsuleStatus.HYPOTHESIS
    type: CapsuleType = CapsuleType.FINDING
    significance: Significance = Significance.IMPLEMENTATION
    confirmation: Confirmation = Confirmation.IMPLICIT
    pattern_id: str = ""
    tags: list[str] = Field(default_factory=list)
    repos: list[str] = Field(default_factory=list)
    commits: list[str] = Field(default_factory=list)
    enabled_by: str = ""
    enables: list[str] = Field(default_factory=list)
    constrains: list[str] = Field(default_factory=list)
    superseded_by: str = ""
    supersedes: list[str] = Field(default_factory=list)
    invalidation_reason: str = ""
    learned: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    invalidated_at: datetime | None = None
    challenges: list[Challenge] = Field(default_factory=list)


@dataclass(frozen=True)
class CapsuleFilter:
    session_id: str | None = None
    repo: str | None = None
    phase: str | None = None
    tag: str | None = None
    file_path: str | None = None
    status: CapsuleStatus | None = None
    type: CapsuleType | None = None
    significance: Significance | None = None
    include_invalidated: bool = False
    show_evolution: bool = False


class Repo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    path: str
    remote_url: str = ""
    registered_at: datetime = Field(default_factory=utc_now)


class ChangeRecord(BaseModel):
    """Per-repo state of a session: the commit work started from and where it ended."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    repo_id: str
    status: str = "started"
    base_commit: str = ""
    final_commit: str = ""
    artifacts: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class InvokeMode(str, Enum):
    INTERACTIVE = "interactive"
    NON_INTERACTIVE = "non_interactive"


class AgentOutcome(str, Enum):
    SUCCESS = "success"
    INTERRUPTED = "interrupted"
    PHASE_COMPLETE = "phase_complete"


class VerifyDecision(str, Enum):
    ACCEPT = "accept"
    REEXECUTE = "reexecute"
    PAUSE = "pause"


@dataclass(frozen=True)
class AgentRequest:
    """Everything an external agent needs to run one phase."""

    session_id: str
    phase: Phase
    system_prompt: str
    initial_message: str
    working_dir: Path
    output_dir: Path
    allowed_tools: tuple[str, ...] | None
    mode: InvokeMode = InvokeMode.INTERACTIVE
