from __future__ import annotations

import getpass
import os
import subprocess
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path

_RUNTIME_CHOICES = ("claude", "codex", "deepagents")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    home: str = "~/.card"
    work_root: str = ""
    runtime: str = "claude"
    runtime_path: str = ""
    model: str = "gpt-4o"
    auto_continue_simplify: bool = True
    auto_continue_record: bool = True
    max_execution_attempts: int = 5
    recursion_limit: int = 200
    recall_max_capsules: int = 10
    recall_max_tokens: int = 5000
    author: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            home=os.getenv("CARD_HOME", "~/.card"),
            work_root=os.getenv("CARD_WORK_ROOT", ""),
            runtime=os.getenv("CARD_RUNTIME", "claude"),
            runtime_path=os.getenv("CARD_RUNTIME_PATH", ""),
            model=os.getenv("CARD_MODEL", "gpt-4o"),
            auto_continue_simplify=_get_env_bool("CARD_AUTO_CONTINUE_SIMPLIFY", default=True),
            auto_continue_record=_get_env_bool("CARD_AUTO_CONTINUE_RECORD", default=True),
            max_execution_attempts=_get_env_int("CARD_MAX_EXECUTION_ATTEMPTS", default=5, minimum=1, maximum=100),
            recursion_limit=_get_env_int("CARD_RECURSION_LIMIT", default=200, minimum=25),
            recall_max_capsules=_get_env_int("CARD_RECALL_MAX_CAPSULES", default=10, minimum=1, maximum=1000),
            recall_max_tokens=_get_env_int("CARD_RECALL_MAX_TOKENS", default=5000, minimum=0),
            author=os.getenv("CARD_AUTHOR", ""),
        ).normalized()

    @property
    def home_path(self) -> Path:
        return Path(self.home).expanduser()

    @property
    def work_root_path(self) -> Path:
        """Root of the ephemeral per-phase working directories."""
        if self.work_root:
            return Path(self.work_root).expanduser()
        return Path(tempfile.gettempdir()) / "card"

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.home.strip():
            raise ValueError("CARD_HOME must be non-empty")
        runtime = self.runtime.strip().lower()
        if runtime not in _RUNTIME_CHOICES:
            raise ValueError(f"CARD_RUNTIME must be one of: {', '.join(_RUNTIME_CHOICES)}; got {self.runtime!r}")
        model = self.model.strip()
        if not model:
            raise ValueError("CARD_MODEL must be non-empty")
        author = self.author.strip() or resolve_author()
        return replace(self, runtime=runtime, model=model, author=author, runtime_path=self.runtime_path.strip())


def resolve_author() -> str:
    """Return git ``user.name`` when available, otherwise the login name."""
    try:
        result = subprocess.run(
            ["git", "config", "--get", "user.name"],
            capture_output=True,
            text=True,
            check=False,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        result = None
    if result is not None and result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
