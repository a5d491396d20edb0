from __future__ import annotations


class InvalidTransitionError(ValueError):
    """Session status change rejected by the transition table."""


class UnknownPhaseError(ValueError):
    """Phase name outside the known pipeline phases."""


class ArtifactParseError(ValueError):
    """Structural artifact failure (unterminated or undecodable header)."""


class ArtifactValidationError(ValueError):
    """Artifact body lacks every marker required for its phase (non-fatal)."""


class SessionNotFoundError(FileNotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class RepoNotFoundError(FileNotFoundError):
    def __init__(self, repo_id: str) -> None:
        super().__init__(f"repo not found: {repo_id}")
        self.repo_id = repo_id


class CapsuleNotFoundError(LookupError):
    def __init__(self, capsule_id: str) -> None:
        super().__init__(f"capsule not found: {capsule_id}")
        self.capsule_id = capsule_id


class AgentInvocationError(RuntimeError):
    """External agent failed for a reason other than interruption."""


class ArtifactNotFoundError(FileNotFoundError):
    def __init__(self, phase: str, searched: list[str]) -> None:
        super().__init__(f"no artifact found after {phase} phase (searched: {', '.join(searched)})")
        self.phase = phase
