from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Protocol, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import AgentInvocationError
from .models import AgentOutcome, AgentRequest, InvokeMode, utc_now
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

OUTPUT_DIR_ENV = "CARD_OUTPUT_DIR"
SIGNAL_POLL_SECONDS = 0.5
SIGNAL_GRACE_SECONDS = 2.0

_INTERRUPT_RETURN_CODES = frozenset({-signal.SIGINT, -signal.SIGTERM, 128 + signal.SIGINT, 128 + signal.SIGTERM})


class AgentRuntime(Protocol):
    """External coding agent consumed through a request/outcome contract."""

    name: str

    def invoke(self, request: AgentRequest) -> AgentOutcome: ...


class PhaseCompleteSignal(BaseModel):
    """Written by the agent to ``<output>/signals/phase_complete.yaml`` when it finishes early."""

    model_config = ConfigDict(extra="ignore")

    session_id: str = Field(min_length=1)
    phase: str = Field(min_length=1)
    status: str = Field(pattern=r"^(complete|blocked|needs_input)$")
    timestamp: datetime = Field(default_factory=utc_now)
    summary: str = ""


def phase_complete_path(output_dir: Path) -> Path:
    return output_dir / "signals" / "phase_complete.yaml"


def read_phase_complete(output_dir: Path) -> PhaseCompleteSignal | None:
    """Return the signal if present and well-formed; malformed files are ignored with a warning."""
    path = phase_complete_path(output_dir)
    if not path.is_file():
        return None
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        return PhaseCompleteSignal.model_validate(payload or {})
    except (OSError, yaml.YAMLError, ValidationError) as exc:
        logger.warning("Ignoring unreadable phase-complete signal at %s: %s", path, exc)
        return None


def write_phase_complete(output_dir: Path, sig: PhaseCompleteSignal) -> Path:
    path = phase_complete_path(output_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(sig.model_dump(mode="json"), sort_keys=False), encoding="utf-8")
    return path


def clear_phase_complete(output_dir: Path) -> None:
    path = phase_complete_path(output_dir)
    if path.is_file():
        path.unlink()


class RepoRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = ""
    remote: str = ""
    reason: str = ""

    @property
    def label(self) -> str:
        return self.path or self.remote


class RepoRequestSignal(BaseModel):
    """Written by the agent to ``<output>/signals/repo_request.yaml`` to pull more repos into the session."""

    model_config = ConfigDict(extra="ignore")

    repos: list[RepoRequest] = Field(default_factory=list)


def repo_request_path(output_dir: Path) -> Path:
    return output_dir / "signals" / "repo_request.yaml"


def read_repo_requests(output_dir: Path) -> list[RepoRequest]:
    path = repo_request_path(output_dir)
    if not path.is_file():
        return []
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        return RepoRequestSignal.model_validate(payload or {}).repos
    except (OSError, yaml.YAMLError, ValidationError) as exc:
        logger.warning("Ignoring unreadable repo request signal at %s: %s", path, exc)
        return []


def map_tools_to_sandbox(allowed_tools: Sequence[str] | None) -> str:
    """Collapse a tool allowlist onto the three codex sandbox levels."""
    if allowed_tools is None:
        return "danger-full-access"
    for tool in allowed_tools:
        if tool == "Write" or tool.startswith("Bash"):
            return "workspace-write"
    return "read-only"


def join_prompt(system_prompt: str, initial_message: str) -> str:
    return "\n\n".join(part for part in (system_prompt, initial_message) if part)


class SubprocessRuntime:
    """Runs an agent CLI as a child process sharing the operator's terminal."""

    name = "subprocess"
    default_binary = ""

    def __init__(self, path: str = "") -> None:
        self.path = path or self.default_binary

    def executable(self) -> str:
        resolved = shutil.which(self.path)
        if resolved is None:
            raise AgentInvocationError(f"{self.name} CLI not found at {self.path!r}")
        return resolved

    def build_args(self, request: AgentRequest) -> list[str]:
        raise NotImplementedError

    def invoke(self, request: AgentRequest) -> AgentOutcome:
        args = [self.executable(), *self.build_args(request)]
        env = {**os.environ, OUTPUT_DIR_ENV: str(request.output_dir)}
        request.working_dir.mkdir(parents=True, exist_ok=True)
        clear_phase_complete(request.output_dir)
        logger.debug("Starting %s for %s/%s", self.name, request.session_id, request.phase.value)

        if request.mode is InvokeMode.NON_INTERACTIVE:
            streams = {"stdin": subprocess.DEVNULL, "stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL}
        else:
            streams = {}
        try:
            process = subprocess.Popen(args, cwd=request.working_dir, env=env, **streams)
        except OSError as exc:
            raise AgentInvocationError(f"failed to start {self.name}: {exc}") from exc

        try:
            return self._wait(process, request)
        except KeyboardInterrupt:
            _stop(process)
            return AgentOutcome.INTERRUPTED

    def _wait(self, process: subprocess.Popen[bytes], request: AgentRequest) -> AgentOutcome:
        watch_signal = request.mode is InvokeMode.INTERACTIVE
        while True:
            try:
                returncode = process.wait(timeout=SIGNAL_POLL_SECONDS if watch_signal else None)
            except subprocess.TimeoutExpired:
                sig = read_phase_complete(request.output_dir)
                if sig is not None and sig.status == "complete":
                    logger.info("%s signalled phase complete for %s", self.name, request.phase.value)
                    _stop(process)
                    return AgentOutcome.PHASE_COMPLETE
                continue
            return self._outcome(returncode)

    def _outcome(self, returncode: int) -> AgentOutcome:
        if returncode == 0:
            return AgentOutcome.SUCCESS
        if returncode in _INTERRUPT_RETURN_CODES:
            return AgentOutcome.INTERRUPTED
        raise AgentInvocationError(f"{self.name} exited with code {returncode}")


def _stop(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=SIGNAL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class ClaudeCodeRuntime(SubprocessRuntime):
    name = "claude"
    default_binary = "claude"

    def build_args(self, request: AgentRequest) -> list[str]:
        if request.mode is InvokeMode.NON_INTERACTIVE:
            args = ["-p", request.initial_message, "--system-prompt", request.system_prompt]
        else:
            args = ["--system-prompt", request.system_prompt]
            if request.initial_message:
                args.extend(["--append-system-prompt", request.initial_message])
        for tool in request.allowed_tools or ():
            args.extend(["--allowedTools", tool])
        return args


class CodexRuntime(SubprocessRuntime):
    name = "codex"
    default_binary = "codex"

    def build_args(self, request: AgentRequest) -> list[str]:
        prompt = join_prompt(request.system_prompt, request.initial_message)
        sandbox = map_tools_to_sandbox(request.allowed_tools)
        if request.mode is InvokeMode.NON_INTERACTIVE:
            return ["exec", prompt, "--json", "--sandbox", sandbox]
        args = ["--sandbox", sandbox]
        if prompt:
            args.append(prompt)
        return args


def build_runtime(settings: RuntimeSettings) -> AgentRuntime:
    if settings.runtime == "claude":
        return ClaudeCodeRuntime(settings.runtime_path)
    if settings.runtime == "codex":
        return CodexRuntime(settings.runtime_path)
    if settings.runtime == "deepagents":
        from .agent_runtime import DeepAgentRuntime

        return DeepAgentRuntime(settings)
    raise ValueError(f"unknown runtime: {settings.runtime}")
