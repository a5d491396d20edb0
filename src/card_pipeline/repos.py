from __future__ import annotations

import hashlib
import logging
import re
import subprocess
from pathlib import Path

from pydantic import ValidationError

from .errors import RepoNotFoundError
from .models import Repo
from .state_store import CardHome, atomic_write_text, safe_read_text

logger = logging.getLogger(__name__)

_SCP_REMOTE_RE = re.compile(r"^(?:[\w.-]+@)?([\w.-]+):(?!//)(.+)$")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://(?:[^@/]+@)?")


def normalize_remote(url: str) -> str:
    """Reduce a git remote URL to ``host/owner/name`` so equivalent remotes share an id."""
    value = url.strip().lower()
    scp = _SCP_REMOTE_RE.match(value)
    if scp is not None and "://" not in value:
        value = f"{scp.group(1)}/{scp.group(2)}"
    value = _SCHEME_RE.sub("", value)
    value = value.rstrip("/")
    if value.endswith(".git"):
        value = value[: -len(".git")]
    return value.rstrip("/")


def derive_id(remote_url: str, path: Path) -> str:
    seed = normalize_remote(remote_url) if remote_url.strip() else str(path.resolve())
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:12]


def read_git_remote(path: Path) -> str:
    try:
        result = subprocess.run(
            ["git", "-C", str(path), "config", "--get", "remote.origin.url"],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("Unable to read git remote for %s: %s", path, exc)
        return ""
    return result.stdout.strip() if result.returncode == 0 else ""



def read_git_head(path: Path) -> str:
    try:
        result = subprocess.run(
            ["git", "-C", str(path), "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("Unable to read HEAD commit for %s: %s", path, exc)
        return ""
    return result.stdout.strip() if result.returncode == 0 else ""

class RepoRegistry:
    """Registered repositories persisted as ``repos/<id>.json``."""

    def __init__(self, home: CardHome) -> None:
        self.home = home

    def register(self, path: Path, remote_url: str | None = None) -> Repo:
        resolved = Path(path).expanduser().resolve()
        if not resolved.is_dir():
            raise FileNotFoundError(f"repository path does not exist: {resolved}")
        remote = remote_url if remote_url is not None else read_git_remote(resolved)
        repo_id = derive_id(remote, resolved)
        if self.exists(repo_id):
            existing = self.get(repo_id)
            if existing.path != str(resolved):
                logger.info("Repo %s already registered at %s", repo_id, existing.path)
            return existing
        repo = Repo(id=repo_id, name=resolved.name, path=str(resolved), remote_url=remote.strip())
        atomic_write_text(self.home.repo_path(repo_id), repo.model_dump_json(indent=2))
        logger.info("Registered repo %s (%s)", repo_id, resolved)
        return repo

    def exists(self, repo_id: str) -> bool:
        return self.home.repo_path(repo_id).is_file()

    def get(self, repo_id: str) -> Repo:
        path = self.home.repo_path(repo_id)
        if not path.is_file():
            raise RepoNotFoundError(repo_id)
        text = safe_read_text(path, "repo record")
        try:
            return Repo.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"repo record at {path} failed validation: {exc}") from exc

    def list(self) -> list[Repo]:
        if not self.home.repos_dir.is_dir():
            return []
        return [self.get(path.stem) for path in sorted(self.home.repos_dir.glob("*.json"))]

    def resolve(self, *, path: str = "", remote: str = "") -> Repo:
        """Return the repo named by a local path or a remote URL.

        A path is registered on demand. A remote must already be registered
        because there is no checkout to point the record at.
        """
        if path.strip():
            resolved = Path(path.strip()).expanduser().resolve()
            for repo in self.list():
                if repo.path == str(resolved):
                    return repo
            return self.register(resolved)
        if remote.strip():
            repo_id = derive_id(remote, Path("."))
            if not self.exists(repo_id):
                raise RepoNotFoundError(repo_id)
            return self.get(repo_id)
        raise ValueError("a repo request needs a path or a remote")
