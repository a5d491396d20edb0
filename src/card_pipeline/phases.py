from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .errors import UnknownPhaseError
from .models import InvokeMode, Phase, SessionMode, SessionStatus

_READ_TOOLS = ("Read", "Glob", "Grep")


@dataclass(frozen=True)
class PhaseSpec:
    """Static behaviour of one pipeline phase."""

    phase: Phase
    status: SessionStatus
    produces_artifact: bool
    approval_gate: bool
    allowed_tools: tuple[str, ...] | None
    mode: InvokeMode


PHASE_SPECS: Mapping[Phase, PhaseSpec] = MappingProxyType(
    {
        Phase.INVESTIGATE: PhaseSpec(
            Phase.INVESTIGATE,
            SessionStatus.INVESTIGATING,
            produces_artifact=True,
            approval_gate=True,
            allowed_tools=(*_READ_TOOLS, "Bash(git log:git diff:git show:ls)", "Write"),
            mode=InvokeMode.INTERACTIVE,
        ),
        Phase.PLAN: PhaseSpec(
            Phase.PLAN,
            SessionStatus.PLANNING,
            produces_artifact=True,
            approval_gate=False,
            allowed_tools=(*_READ_TOOLS, "Write"),
            mode=InvokeMode.NON_INTERACTIVE,
        ),
        Phase.REVIEW: PhaseSpec(
            Phase.REVIEW,
            SessionStatus.REVIEWING,
            produces_artifact=True,
            approval_gate=False,
            allowed_tools=(*_READ_TOOLS, "Write"),
            mode=InvokeMode.INTERACTIVE,
        ),
        Phase.EXECUTE: PhaseSpec(
            Phase.EXECUTE,
            SessionStatus.EXECUTING,
            produces_artifact=True,
            approval_gate=False,
            allowed_tools=None,
            mode=InvokeMode.INTERACTIVE,
        ),
        Phase.VERIFY: PhaseSpec(
            Phase.VERIFY,
            SessionStatus.VERIFYING,
            produces_artifact=True,
            approval_gate=False,
            allowed_tools=(*_READ_TOOLS, "Bash(git log:git diff:git show:go test:go build:npm test:make)", "Write"),
            mode=InvokeMode.INTERACTIVE,
        ),
        Phase.SIMPLIFY: PhaseSpec(
            Phase.SIMPLIFY,
            SessionStatus.SIMPLIFYING,
            produces_artifact=False,
            approval_gate=True,
            allowed_tools=None,
            mode=InvokeMode.NON_INTERACTIVE,
        ),
        Phase.CONCLUDE: PhaseSpec(
            Phase.CONCLUDE,
            SessionStatus.CONCLUDING,
            produces_artifact=True,
            approval_gate=False,
            allowed_tools=(*_READ_TOOLS, "Write"),
            mode=InvokeMode.INTERACTIVE,
        ),
        Phase.RECORD: PhaseSpec(
            Phase.RECORD,
            SessionStatus.RECORDING,
            produces_artifact=True,
            approval_gate=True,
            allowed_tools=(*_READ_TOOLS, "Bash(git log:git diff:git show)", "Write"),
            mode=InvokeMode.NON_INTERACTIVE,
        ),
    }
)

# Verify never appears here: it is folded into the execute loop.
PHASE_SEQUENCES: Mapping[SessionMode, tuple[Phase, ...]] = MappingProxyType(
    {
        SessionMode.STANDARD: (
            Phase.INVESTIGATE,
            Phase.PLAN,
            Phase.REVIEW,
            Phase.EXECUTE,
            Phase.SIMPLIFY,
            Phase.RECORD,
        ),
        SessionMode.QUICKFIX: (Phase.EXECUTE, Phase.RECORD),
        SessionMode.RESEARCH: (Phase.INVESTIGATE, Phase.CONCLUDE, Phase.RECORD),
    }
)

_STATUS_PHASES: Mapping[SessionStatus, Phase] = MappingProxyType(
    {
        SessionStatus.STARTED: Phase.INVESTIGATE,
        SessionStatus.INVESTIGATING: Phase.INVESTIGATE,
        SessionStatus.PLANNING: Phase.PLAN,
        SessionStatus.REVIEWING: Phase.REVIEW,
        SessionStatus.APPROVED: Phase.EXECUTE,
        SessionStatus.EXECUTING: Phase.EXECUTE,
        SessionStatus.VERIFYING: Phase.VERIFY,
        SessionStatus.SIMPLIFYING: Phase.SIMPLIFY,
        SessionStatus.CONCLUDING: Phase.CONCLUDE,
        SessionStatus.RECORDING: Phase.RECORD,
    }
)

# Status a session moves to once a recovered phase's artifact is ingested.
NEXT_STATUS_AFTER: Mapping[Phase, SessionStatus] = MappingProxyType(
    {
        Phase.INVESTIGATE: SessionStatus.PLANNING,
        Phase.PLAN: SessionStatus.REVIEWING,
        Phase.REVIEW: SessionStatus.APPROVED,
        Phase.EXECUTE: SessionStatus.VERIFYING,
        Phase.CONCLUDE: SessionStatus.RECORDING,
        Phase.RECORD: SessionStatus.COMPLETED,
    }
)


def as_phase(value: Phase | str) -> Phase:
    if isinstance(value, Phase):
        return value
    try:
        return Phase(value)
    except ValueError as exc:
        raise UnknownPhaseError(f"unknown phase: {value}") from exc


def spec_for(phase: Phase | str) -> PhaseSpec:
    return PHASE_SPECS[as_phase(phase)]


def sequence_for(mode: SessionMode) -> tuple[Phase, ...]:
    return PHASE_SEQUENCES[mode]


def current_phase(status: SessionStatus) -> Phase:
    """Phase that was in progress when a session was left at ``status``."""
    try:
        return _STATUS_PHASES[status]
    except KeyError as exc:
        raise ValueError(f"no phase in progress for status {status.value}") from exc


def sequence_from(mode: SessionMode, phase: Phase) -> tuple[Phase, ...]:
    """Remaining phases starting at ``phase``; a verify start resumes the execute loop."""
    sequence = sequence_for(mode)
    start = Phase.EXECUTE if phase is Phase.VERIFY else phase
    if start not in sequence:
        raise ValueError(f"phase {phase.value} is not part of the {mode.value} sequence")
    return sequence[sequence.index(start) :]
