from pathlib import Path

from card_pipeline.artifacts import ArtifactStore
from card_pipeline.capsules import CapsuleStore
from card_pipeline.ingest import ArtifactIngestor, find_markdown_artifact
from card_pipeline.models import Phase
from card_pipeline.state_store import CardHome


def _ingestor(home: CardHome) -> ArtifactIngestor:
    return ArtifactIngestor(ArtifactStore(home), CapsuleStore(home))


def test_locate_prefers_expected_name_then_headed_markdown(home: CardHome, tmp_path: Path) -> None:
    work_dir = tmp_path / "work"
    repo_root = tmp_path / "repo"
    work_dir.mkdir()
    repo_root.mkdir()
    ingestor = _ingestor(home)

    (work_dir / "scratch.md").write_text("no header", encoding="utf-8")
    assert ingestor.locate(work_dir, Phase.PLAN, repo_root) is None

    (work_dir / "guide.md").write_text("---\nsession: s-1\n---\nbody", encoding="utf-8")
    assert ingestor.locate(work_dir, Phase.PLAN, repo_root) == work_dir / "guide.md"

    (work_dir / "implementation_guide.md").write_text("body", encoding="utf-8")
    assert ingestor.locate(work_dir, Phase.PLAN, repo_root) == work_dir / "implementation_guide.md"


def test_locate_moves_stray_headed_markdown_from_repo_root(home: CardHome, tmp_path: Path) -> None:
    work_dir = tmp_path / "work"
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / "README.md").write_text("# project readme", encoding="utf-8")
    (repo_root / "plan-notes.md").write_text("---\nsession: s-1\n---\nsteps", encoding="utf-8")

    found = _ingestor(home).locate(work_dir, Phase.PLAN, repo_root)

    assert found == work_dir / "plan-notes.md"
    assert found.is_file()
    assert not (repo_root / "plan-notes.md").exists()
    assert (repo_root / "README.md").exists()


def test_find_markdown_artifact_lists_known_names_first(tmp_path: Path) -> None:
    (tmp_path / "a-notes.md").write_text("---\nsession: s-1\n---\n", encoding="utf-8")
    (tmp_path / "execution_log.md").write_text("---\nsession: s-1\n---\n", encoding="utf-8")
    (tmp_path / "ignored.txt").write_text("---\nsession: s-1\n---\n", encoding="utf-8")
    assert find_markdown_artifact(tmp_path) == tmp_path / "execution_log.md"
    assert find_markdown_artifact(tmp_path / "missing") is None
