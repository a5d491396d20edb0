from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.json"
CAPSULES_FILENAME = "capsules.md"
CHANGE_FILENAME = "change.json"

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def safe_read_text(path: Path, label: str) -> str:
    """Read a persisted record and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


class CardHome:
    """Filesystem layout rooted at the card home directory.

    ``sessions/<id>/`` holds ``session.json``, ``capsules.md``, the
    session-level phase artifacts and ``changes/<repo>/`` subdirectories.
    ``repos/<id>.json`` holds registered repositories.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.repos_dir = self.root / "repos"

    def ensure_structure(self) -> None:
        for directory in (self.root, self.sessions_dir, self.repos_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def session_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / SESSION_FILENAME

    def capsules_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / CAPSULES_FILENAME

    def changes_dir(self, session_id: str, repo_id: str) -> Path:
        return self.session_dir(session_id) / "changes" / repo_id

    def change_path(self, session_id: str, repo_id: str) -> Path:
        return self.changes_dir(session_id, repo_id) / CHANGE_FILENAME

    def repo_path(self, repo_id: str) -> Path:
        return self.repos_dir / f"{repo_id}.json"

    def session_ids(self) -> list[str]:
        """Return ids of every directory under ``sessions/`` holding a session record."""
        if not self.sessions_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.sessions_dir.iterdir()
            if entry.is_dir() and (entry / SESSION_FILENAME).is_file()
        )
