from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .models import ChangeRecord, utc_now
from .repos import RepoRegistry, read_git_head
from .state_store import CardHome, atomic_write_text, safe_read_text

logger = logging.getLogger(__name__)


class ChangeStore:
    """Per-repo change records persisted as ``sessions/<id>/changes/<repo>/change.json``."""

    def __init__(
        self,
        home: CardHome,
        repos: RepoRegistry,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.home = home
        self.repos = repos
        self._clock = clock

    def create(self, session_id: str, repo_id: str) -> ChangeRecord:
        """Record the repo's current HEAD as the base commit for this session."""
        repo = self.repos.get(repo_id)
        now = self._clock()
        change = ChangeRecord(
            session_id=session_id,
            repo_id=repo_id,
            base_commit=read_git_head(Path(repo.path)),
            created_at=now,
            updated_at=now,
        )
        self.save(change)
        logger.debug("Change record for %s/%s at %s", session_id, repo_id, change.base_commit or "no HEAD")
        return change

    def get(self, session_id: str, repo_id: str) -> ChangeRecord:
        path = self.home.change_path(session_id, repo_id)
        text = safe_read_text(path, "change record")
        try:
            return ChangeRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"change record at {path} failed validation: {exc}") from exc

    def find(self, session_id: str, repo_id: str) -> ChangeRecord | None:
        try:
            return self.get(session_id, repo_id)
        except (OSError, ValueError):
            return None

    def list_for_session(self, session_id: str) -> list[ChangeRecord]:
        changes_root = self.home.session_dir(session_id) / "changes"
        if not changes_root.is_dir():
            return []
        records: list[ChangeRecord] = []
        for entry in sorted(changes_root.iterdir()):
            if not entry.is_dir():
                continue
            change = self.find(session_id, entry.name)
            if change is not None:
                records.append(change)
        return records

    def save(self, change: ChangeRecord) -> None:
        atomic_write_text(
            self.home.change_path(change.session_id, change.repo_id),
            change.model_dump_json(indent=2),
        )

    def finalize(self, session_id: str, repo_id: str, artifact_names: list[str]) -> ChangeRecord:
        """Close a repo's change at session completion with its current HEAD."""
        change = self.find(session_id, repo_id) or self.create(session_id, repo_id)
        repo = self.repos.get(repo_id)
        change.status = "completed"
        change.final_commit = read_git_head(Path(repo.path))
        for name in artifact_names:
            if name not in change.artifacts:
                change.artifacts.append(name)
        change.updated_at = self._clock()
        self.save(change)
        return change
