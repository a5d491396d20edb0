import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from card_pipeline.errors import InvalidTransitionError, RepoNotFoundError, SessionNotFoundError
from card_pipeline.models import (
    SESSION_TRANSITIONS,
    TERMINAL_STATUSES,
    ExecutionOutcome,
    Repo,
    SessionMode,
    SessionStatus,
)
from card_pipeline.session import SessionStore, check_transition, slugify
from card_pipeline.state_store import CardHome

ACTIVE_STATUSES = [
    status for status in SessionStatus if status not in TERMINAL_STATUSES and status is not SessionStatus.PAUSED
]


def _force_status(sessions: SessionStore, session_id: str, status: SessionStatus) -> None:
    session = sessions.get(session_id)
    session.status = status
    sessions.update(session)


def test_slugify_normalizes_description() -> None:
    assert slugify("Fix  the Login Bug!") == "fix-the-login-bug"
    assert slugify("   ") == "session"
    assert slugify("?!") == "session"
    assert len(slugify("word " * 40)) <= 72


def test_generate_id_shares_prefix_but_differs(sessions: SessionStore) -> None:
    first = sessions.generate_id("Add retry to uploader")
    second = sessions.generate_id("Add retry to uploader")
    assert first != second
    assert first.rsplit("-", 1)[0] == second.rsplit("-", 1)[0]
    assert first.split("-", 1)[1].startswith("add-retry-to-uploader")
    assert len(first.rsplit("-", 1)[1]) == 8


def test_create_standard_session_and_reject_skipping_phases(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create("Add caching layer", [repo.id])
    assert session.status is SessionStatus.STARTED
    assert session.mode is SessionMode.STANDARD
    assert session.author == "tester"

    moved = sessions.transition(session.id, SessionStatus.INVESTIGATING)
    assert moved.status is SessionStatus.INVESTIGATING

    fresh = sessions.create("Another change", [repo.id])
    with pytest.raises(InvalidTransitionError):
        sessions.transition(fresh.id, SessionStatus.APPROVED)
    assert sessions.get(fresh.id).status is SessionStatus.STARTED


def test_create_requires_registered_repo(sessions: SessionStore) -> None:
    with pytest.raises(RepoNotFoundError):
        sessions.create("Nope", ["0123456789ab"])
    with pytest.raises(ValueError):
        sessions.create("Nope", [])


def test_create_quickfix_starts_approved(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create_quickfix("Typo in banner", [repo.id])
    assert session.mode is SessionMode.QUICKFIX
    assert session.status is SessionStatus.APPROVED


@pytest.mark.parametrize("current", ACTIVE_STATUSES)
def test_check_transition_matches_table(current: SessionStatus) -> None:
    allowed = SESSION_TRANSITIONS.get(current, frozenset())
    for target in SessionStatus:
        if target == current:
            assert check_transition(current, target) is False
        elif target in allowed:
            assert check_transition(current, target) is True
        else:
            with pytest.raises(InvalidTransitionError):
                check_transition(current, target)


@pytest.mark.parametrize("current", [*TERMINAL_STATUSES, SessionStatus.PAUSED])
def test_check_transition_rejects_terminal_and_paused(current: SessionStatus) -> None:
    for target in SessionStatus:
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)


def test_self_transition_is_noop(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create("Idempotent", [repo.id])
    sessions.transition(session.id, SessionStatus.INVESTIGATING)
    before = sessions.get(session.id)
    after = sessions.transition(session.id, SessionStatus.INVESTIGATING)
    assert after.status is SessionStatus.INVESTIGATING
    assert after.updated_at == before.updated_at


@pytest.mark.parametrize("status", ACTIVE_STATUSES)
def test_pause_then_resume_restores_status(sessions: SessionStore, repo: Repo, status: SessionStatus) -> None:
    session = sessions.create("Pause me", [repo.id])
    _force_status(sessions, session.id, status)

    paused = sessions.pause(session.id)
    assert paused.status is SessionStatus.PAUSED
    assert paused.previous_status is status
    assert paused.paused_at is not None

    resumed = sessions.resume(session.id)
    assert resumed.status is status
    assert resumed.previous_status is None


def test_resume_active_session_is_noop(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create("Crashed", [repo.id])
    _force_status(sessions, session.id, SessionStatus.EXECUTING)
    assert sessions.resume(session.id).status is SessionStatus.EXECUTING


def test_transition_from_paused_is_rejected(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create("Paused", [repo.id])
    sessions.pause(session.id)
    with pytest.raises(InvalidTransitionError, match="paused"):
        sessions.transition(session.id, SessionStatus.INVESTIGATING)


def test_terminal_sessions_reject_everything(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create("Abandon me", [repo.id])
    sessions.abandon(session.id)
    with pytest.raises(InvalidTransitionError):
        sessions.abandon(session.id)
    with pytest.raises(InvalidTransitionError):
        sessions.pause(session.id)
    with pytest.raises(InvalidTransitionError):
        sessions.resume(session.id)


def test_complete_stamps_completion_time(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create("Finish", [repo.id])
    _force_status(sessions, session.id, SessionStatus.RECORDING)
    completed = sessions.complete(session.id)
    assert completed.status is SessionStatus.COMPLETED
    assert completed.completed_at is not None


def test_execution_attempts_number_sequentially(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create_quickfix("Attempts", [repo.id])
    with pytest.raises(ValueError):
        session.update_last_execution_outcome(ExecutionOutcome.COMPLETED)

    first = session.add_execution_attempt()
    session.update_last_execution_outcome(ExecutionOutcome.FAILED_VERIFICATION, "tests failed")
    second = session.add_execution_attempt()
    session.update_last_execution_outcome(ExecutionOutcome.COMPLETED)
    sessions.update(session)

    reloaded = sessions.get(session.id)
    assert [attempt.attempt for attempt in reloaded.execution_history] == [first.attempt, second.attempt] == [1, 2]
    assert reloaded.execution_history[0].outcome is ExecutionOutcome.FAILED_VERIFICATION
    assert reloaded.execution_history[0].reason == "tests failed"
    assert reloaded.execution_history[1].outcome is ExecutionOutcome.COMPLETED


def test_add_repos_dedupes_and_appends(sessions: SessionStore, repo: Repo, tmp_path: Path) -> None:
    other_path = tmp_path / "repo-b"
    other_path.mkdir()
    other = sessions.repos.register(other_path, remote_url="https://github.com/acme/repo-b")
    session = sessions.create("Multi repo", [repo.id])

    updated = sessions.add_repos(session.id, [other.id, repo.id, other.id])
    assert updated.repos == [repo.id, other.id]
    with pytest.raises(RepoNotFoundError):
        sessions.add_repos(session.id, ["missing"])


def test_get_missing_session_names_the_id(sessions: SessionStore) -> None:
    with pytest.raises(SessionNotFoundError, match="no-such-session"):
        sessions.get("no-such-session")


def test_list_is_newest_first_and_skips_corrupt(home: CardHome, repo: Repo) -> None:
    times = iter(datetime(2026, 1, day, tzinfo=UTC) for day in range(1, 20))
    store = SessionStore(home, author="tester", clock=lambda: next(times))
    older = store.create("Older", [repo.id])
    newer = store.create("Newer", [repo.id])

    broken = home.session_dir("broken")
    broken.mkdir()
    (broken / "session.json").write_text(json.dumps({"id": "broken"}), encoding="utf-8")

    listed = store.list()
    assert [session.id for session in listed] == [newer.id, older.id]
    assert newer.created_at - older.created_at >= timedelta(days=1)


def test_active_excludes_terminal(sessions: SessionStore, repo: Repo) -> None:
    live = sessions.create("Live", [repo.id])
    dead = sessions.create("Dead", [repo.id])
    sessions.abandon(dead.id)
    assert [session.id for session in sessions.active()] == [live.id]
