from pathlib import Path

import pytest

from card_pipeline import changes
from card_pipeline.changes import ChangeStore
from card_pipeline.models import Repo
from card_pipeline.session import SessionStore
from card_pipeline.state_store import CardHome


@pytest.fixture(autouse=True)
def fixed_head(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(changes, "read_git_head", lambda path: f"sha-{Path(path).name}")


def test_create_session_records_base_commit_per_repo(sessions: SessionStore, repo: Repo, home: CardHome) -> None:
    session = sessions.create("Add caching layer", [repo.id])

    change = sessions.changes.get(session.id, repo.id)
    assert change.base_commit == "sha-repo-a"
    assert change.status == "started"
    assert change.final_commit == ""
    assert home.change_path(session.id, repo.id).is_file()


def test_add_repos_creates_change_only_for_new_repos(sessions: SessionStore, repo: Repo, tmp_path: Path) -> None:
    other_path = tmp_path / "repo-b"
    other_path.mkdir()
    other = sessions.repos.register(other_path, remote_url="https://github.com/acme/repo-b")
    session = sessions.create("Multi repo", [repo.id])
    original = sessions.changes.get(session.id, repo.id)

    sessions.add_repos(session.id, [other.id, repo.id])

    listed = sessions.changes.list_for_session(session.id)
    assert sorted(change.repo_id for change in listed) == sorted([repo.id, other.id])
    assert sessions.changes.get(session.id, repo.id).created_at == original.created_at
    assert sessions.changes.get(session.id, other.id).base_commit == "sha-repo-b"


def test_save_persists_final_commit(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create_quickfix("Fix typo", [repo.id])
    change = sessions.changes.get(session.id, repo.id)
    change.final_commit = "abc123"
    change.artifacts.append("execution_log.md")
    sessions.changes.save(change)

    reloaded = ChangeStore(sessions.home, sessions.repos).get(session.id, repo.id)
    assert reloaded.final_commit == "abc123"
    assert reloaded.artifacts == ["execution_log.md"]


def test_missing_and_corrupt_records(sessions: SessionStore, repo: Repo, home: CardHome) -> None:
    session = sessions.create("Broken change", [repo.id])
    assert sessions.changes.find(session.id, "nope") is None
    with pytest.raises(FileNotFoundError):
        sessions.changes.get(session.id, "nope")

    home.change_path(session.id, repo.id).write_text('{"repo_id": 3}', encoding="utf-8")
    with pytest.raises(ValueError):
        sessions.changes.get(session.id, repo.id)
    assert sessions.changes.list_for_session(session.id) == []
    assert sessions.changes.list_for_session("no-such-session") == []


def test_finalize_closes_change_with_head_and_artifacts(sessions: SessionStore, repo: Repo) -> None:
    session = sessions.create("Ship it", [repo.id])

    sessions.changes.finalize(session.id, repo.id, ["milestone_ledger.md"])
    change = sessions.changes.finalize(session.id, repo.id, ["milestone_ledger.md"])

    assert change.status == "completed"
    assert change.final_commit == "sha-repo-a"
    assert change.artifacts == ["milestone_ledger.md"]
    assert sessions.changes.get(session.id, repo.id) == change
