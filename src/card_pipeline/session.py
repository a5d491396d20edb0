from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime
from typing import Callable, Iterable

from pydantic import ValidationError

from .changes import ChangeStore
from .errors import InvalidTransitionError, RepoNotFoundError, SessionNotFoundError
from .models import (
    SESSION_TRANSITIONS,
    TERMINAL_STATUSES,
    Session,
    SessionMode,
    SessionStatus,
    utc_now,
)
from .repos import RepoRegistry
from .state_store import CardHome, atomic_write_text, locked_file, safe_read_text

logger = logging.getLogger(__name__)

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"\s+")
_SLUG_MAX_LENGTH = 72
_SLUG_FALLBACK = "session"


def slugify(description: str) -> str:
    """Lower-case, strip punctuation, hyphenate whitespace and cap at 72 chars."""
    slug = _SLUG_STRIP_RE.sub("", description.lower())
    slug = _SLUG_SPACE_RE.sub("-", slug.strip()).strip("-")
    if len(slug) > _SLUG_MAX_LENGTH:
        slug = slug[:_SLUG_MAX_LENGTH].rstrip("-")
    return slug or _SLUG_FALLBACK


def check_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """Validate ``current -> target``.

    Returns:
        ``False`` when the transition is an idempotent self-transition,
        ``True`` when the status should change.

    Raises:
        InvalidTransitionError: If ``current`` is terminal or paused, or the
            target is not allowed from ``current``.
    """
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"session is {current.value}; no further transitions allowed")
    if current is SessionStatus.PAUSED:
        raise InvalidTransitionError("session is paused; resume it first")
    if target == current:
        return False
    allowed = SESSION_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        allowed_text = ", ".join(sorted(status.value for status in allowed)) or "none"
        raise InvalidTransitionError(
            f"invalid transition {current.value} -> {target.value} (allowed: {allowed_text})"
        )
    return True


class SessionStore:
    """Session lifecycle persisted as ``sessions/<id>/session.json``.

    Every mutating call reloads the record under the session lock, applies
    the change and writes it back atomically. Failed transitions leave the
    record untouched.
    """

    def __init__(
        self,
        home: CardHome,
        *,
        repos: RepoRegistry | None = None,
        author: str = "",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.home = home
        self.repos = repos if repos is not None else RepoRegistry(home)
        self.changes = ChangeStore(home, self.repos, clock=clock)
        self.author = author
        self._clock = clock

    def generate_id(self, description: str) -> str:
        """Return ``YYYYMMDD-<slug>-<8 hex>``, regenerating while the directory exists."""
        prefix = f"{self._clock().strftime('%Y%m%d')}-{slugify(description)}"
        while True:
            candidate = f"{prefix}-{secrets.token_hex(4)}"
            if not self.home.session_dir(candidate).exists():
                return candidate

    def create(
        self,
        description: str,
        repos: Iterable[str],
        *,
        mode: SessionMode = SessionMode.STANDARD,
        context: str = "",
        status: SessionStatus = SessionStatus.STARTED,
        import_source: str | None = None,
        supersedes: Iterable[str] = (),
        extends: Iterable[str] = (),
    ) -> Session:
        repo_ids = _dedupe(repos)
        if not repo_ids:
            raise ValueError("a session requires at least one repo")
        for repo_id in repo_ids:
            if not self.repos.exists(repo_id):
                raise RepoNotFoundError(repo_id)
        now = self._clock()
        session = Session(
            id=self.generate_id(description),
            description=description,
            context=context,
            mode=mode,
            status=status,
            repos=repo_ids,
            created_at=now,
            updated_at=now,
            author=self.author,
            import_source=import_source,
            supersedes=list(supersedes),
            extends=list(extends),
        )
        self.home.session_dir(session.id).mkdir(parents=True, exist_ok=False)
        self._write(session)
        for repo_id in repo_ids:
            self.changes.create(session.id, repo_id)
        logger.info("Created %s session %s", mode.value, session.id)
        return session

    def create_quickfix(self, description: str, repos: Iterable[str], *, context: str = "") -> Session:
        return self.create(
            description,
            repos,
            mode=SessionMode.QUICKFIX,
            context=context,
            status=SessionStatus.APPROVED,
        )

    def exists(self, session_id: str) -> bool:
        return self.home.session_path(session_id).is_file()

    def get(self, session_id: str) -> Session:
        path = self.home.session_path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(session_id)
        text = safe_read_text(path, "session record")
        try:
            return Session.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"session record at {path} failed validation: {exc}") from exc

    def list(self) -> list[Session]:
        """All loadable sessions, newest first. Unreadable records are skipped with a warning."""
        sessions: list[Session] = []
        for session_id in self.home.session_ids():
            try:
                sessions.append(self.get(session_id))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable session %s: %s", session_id, exc)
        sessions.sort(key=lambda item: item.created_at, reverse=True)
        return sessions

    def active(self) -> list[Session]:
        return [session for session in self.list() if not session.is_terminal]

    def update(self, session: Session) -> Session:
        session.updated_at = self._clock()
        with locked_file(self.home.session_path(session.id)):
            self._write(session)
        return session

    def transition(self, session_id: str, target: SessionStatus) -> Session:
        def apply(session: Session) -> bool:
            if not check_transition(session.status, target):
                return False
            logger.info("Session %s: %s -> %s", session.id, session.status.value, target.value)
            session.status = target
            if target is SessionStatus.COMPLETED:
                session.completed_at = self._clock()
            return True

        return self._mutate(session_id, apply)

    def complete(self, session_id: str) -> Session:
        return self.transition(session_id, SessionStatus.COMPLETED)

    def pause(self, session_id: str) -> Session:
        def apply(session: Session) -> bool:
            if session.is_terminal:
                raise InvalidTransitionError(f"cannot pause a {session.status.value} session")
            if session.status is SessionStatus.PAUSED:
                raise InvalidTransitionError("session is already paused")
            session.previous_status = session.status
            session.status = SessionStatus.PAUSED
            session.paused_at = self._clock()
            logger.info("Session %s paused at %s", session.id, session.previous_status.value)
            return True

        return self._mutate(session_id, apply)

    def resume(self, session_id: str) -> Session:
        """Restore the pre-pause status. A session in an active status is returned unchanged."""

        def apply(session: Session) -> bool:
            if session.is_terminal:
                raise InvalidTransitionError(f"cannot resume a {session.status.value} session")
            if session.status is not SessionStatus.PAUSED:
                return False
            if session.previous_status is None:
                raise InvalidTransitionError(f"paused session {session.id} has no previous status")
            session.status = session.previous_status
            session.previous_status = None
            logger.info("Session %s resumed at %s", session.id, session.status.value)
            return True

        return self._mutate(session_id, apply)

    def abandon(self, session_id: str) -> Session:
        def apply(session: Session) -> bool:
            if session.is_terminal:
                raise InvalidTransitionError(f"cannot abandon a {session.status.value} session")
            session.status = SessionStatus.ABANDONED
            session.previous_status = None
            return True

        return self._mutate(session_id, apply)

    def add_repos(self, session_id: str, repo_ids: Iterable[str]) -> Session:
        additions = _dedupe(repo_ids)
        for repo_id in additions:
            if not self.repos.exists(repo_id):
                raise RepoNotFoundError(repo_id)

        def apply(session: Session) -> bool:
            new_ids = [repo_id for repo_id in additions if repo_id not in session.repos]
            session.repos.extend(new_ids)
            return bool(new_ids)

        session = self._mutate(session_id, apply)
        for repo_id in additions:
            if self.changes.find(session_id, repo_id) is None:
                self.changes.create(session_id, repo_id)
        return session

    def _mutate(self, session_id: str, apply: Callable[[Session], bool]) -> Session:
        path = self.home.session_path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(session_id)
        with locked_file(path):
            session = self.get(session_id)
            if apply(session):
                session.updated_at = self._clock()
                self._write(session)
        return session

    def _write(self, session: Session) -> None:
        atomic_write_text(self.home.session_path(session.id), session.model_dump_json(indent=2))


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        cleaned = value.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)
