from pathlib import Path

import pytest

from card_pipeline.errors import RepoNotFoundError
from card_pipeline.repos import RepoRegistry, derive_id, normalize_remote
from card_pipeline.state_store import CardHome


@pytest.mark.parametrize(
    "url",
    [
        "git@github.com:acme/widgets.git",
        "https://github.com/acme/widgets",
        "https://github.com/acme/widgets.git/",
        "ssh://git@github.com/acme/widgets.git",
        "HTTPS://GitHub.com/Acme/Widgets",
        "https://token@github.com/acme/widgets.git",
    ],
)
def test_equivalent_remotes_normalize_together(url: str) -> None:
    assert normalize_remote(url) == "github.com/acme/widgets"


def test_derive_id_prefers_remote(tmp_path: Path) -> None:
    by_remote = derive_id("git@github.com:acme/widgets.git", tmp_path / "a")
    assert by_remote == derive_id("https://github.com/acme/widgets", tmp_path / "b")
    assert len(by_remote) == 12
    assert derive_id("", tmp_path / "a") != derive_id("", tmp_path / "b")


def test_register_is_idempotent_per_remote(home: CardHome, tmp_path: Path) -> None:
    registry = RepoRegistry(home)
    first_path = tmp_path / "widgets"
    first_path.mkdir()
    clone_path = tmp_path / "widgets-clone"
    clone_path.mkdir()

    repo = registry.register(first_path, remote_url="git@github.com:acme/widgets.git")
    again = registry.register(clone_path, remote_url="https://github.com/acme/widgets")

    assert again == repo
    assert repo.name == "widgets"
    assert registry.get(repo.id).path == str(first_path.resolve())
    assert [item.id for item in registry.list()] == [repo.id]


def test_register_requires_existing_directory(home: CardHome, tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RepoRegistry(home).register(tmp_path / "missing", remote_url="")


def test_unknown_repo_raises(home: CardHome) -> None:
    with pytest.raises(RepoNotFoundError, match="feedface0000"):
        RepoRegistry(home).get("feedface0000")


def test_resolve_by_path_reuses_or_registers(home: CardHome, tmp_path: Path) -> None:
    registry = RepoRegistry(home)
    known_path = tmp_path / "widgets"
    known_path.mkdir()
    known = registry.register(known_path, remote_url="git@github.com:acme/widgets.git")
    fresh_path = tmp_path / "gadgets"
    fresh_path.mkdir()

    assert registry.resolve(path=str(known_path)).id == known.id
    fresh = registry.resolve(path=f"{fresh_path}/")
    assert fresh.name == "gadgets"
    assert registry.exists(fresh.id)


def test_resolve_by_remote_requires_registration(home: CardHome, tmp_path: Path) -> None:
    registry = RepoRegistry(home)
    path = tmp_path / "widgets"
    path.mkdir()
    known = registry.register(path, remote_url="git@github.com:acme/widgets.git")

    assert registry.resolve(remote="https://github.com/acme/widgets").id == known.id
    with pytest.raises(RepoNotFoundError):
        registry.resolve(remote="git@github.com:acme/unknown.git")
    with pytest.raises(ValueError):
        registry.resolve()
