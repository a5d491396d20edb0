from importlib.metadata import version

from .artifacts import ArtifactStore
from .capsules import CapsuleStore
from .errors import (
    AgentInvocationError,
    ArtifactNotFoundError,
    ArtifactParseError,
    ArtifactValidationError,
    CapsuleNotFoundError,
    InvalidTransitionError,
    RepoNotFoundError,
    SessionNotFoundError,
    UnknownPhaseError,
)
from .models import (
    AgentOutcome,
    AgentRequest,
    Artifact,
    ArtifactHeader,
    Capsule,
    CapsuleFilter,
    ExecutionOutcome,
    Phase,
    Repo,
    Session,
    SessionMode,
    SessionStatus,
    VerifyDecision,
)
from .orchestrator import PhaseOrchestrator, RunResult
from .recovery import OrphanedArtifact, Recovery
from .repos import RepoRegistry
from .session import SessionStore
from .settings import RuntimeSettings
from .state_store import CardHome


def get_version() -> str:
    try:
        return version("card-pipeline")
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentInvocationError",
    "AgentOutcome",
    "AgentRequest",
    "Artifact",
    "ArtifactHeader",
    "ArtifactNotFoundError",
    "ArtifactParseError",
    "ArtifactStore",
    "ArtifactValidationError",
    "Capsule",
    "CapsuleFilter",
    "CapsuleNotFoundError",
    "CapsuleStore",
    "CardHome",
    "ExecutionOutcome",
    "InvalidTransitionError",
    "OrphanedArtifact",
    "Phase",
    "PhaseOrchestrator",
    "Recovery",
    "Repo",
    "RepoNotFoundError",
    "RepoRegistry",
    "RunResult",
    "RuntimeSettings",
    "Session",
    "SessionMode",
    "SessionNotFoundError",
    "SessionStatus",
    "SessionStore",
    "UnknownPhaseError",
    "VerifyDecision",
    "get_version",
]
