from datetime import UTC, datetime

import pytest

from card_pipeline import artifacts
from card_pipeline.artifacts import ArtifactStore
from card_pipeline.errors import ArtifactParseError, ArtifactValidationError, UnknownPhaseError
from card_pipeline.models import Artifact, ArtifactHeader, ArtifactStatus, Phase
from card_pipeline.state_store import CardHome


def _artifact(phase: str, body: str, session: str = "20260101-demo-abcd1234") -> Artifact:
    header = ArtifactHeader(
        session=session,
        repos=["r1"],
        phase=phase,
        timestamp=datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC),
        status=ArtifactStatus.FINAL,
    )
    return Artifact(header=header, body=body)


@pytest.mark.parametrize(
    "raw",
    ["", "plain body", "# Title\n\nno header here\n", "  -- not a delimiter\n---\n"],
)
def test_parse_without_header_keeps_raw_body(raw: str) -> None:
    artifact = artifacts.parse(raw)
    assert artifact.body == raw
    assert artifact.header.is_empty


def test_parse_reads_yaml_header_and_trims_body() -> None:
    raw = (
        "---\nsession: s-1\nrepos: [a, b]\nphase: investigate\n"
        "timestamp: 2026-01-02T03:04:05Z\nstatus: final\n---\n\n\n## Executive Summary\nFindings.\n"
    )
    artifact = artifacts.parse(raw)
    assert artifact.header.session == "s-1"
    assert artifact.header.repos == ["a", "b"]
    assert artifact.header.phase == "investigate"
    assert artifact.header.status is ArtifactStatus.FINAL
    assert artifact.header.timestamp == datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
    assert artifact.body == "## Executive Summary\nFindings.\n"


def test_parse_accepts_single_repo_string() -> None:
    artifact = artifacts.parse("---\nsession: s-1\nrepos: only-one\n---\nbody")
    assert artifact.header.repos == ["only-one"]


@pytest.mark.parametrize("raw", ["---\nsession: s-1\nbody without close", "---", "---\nphase: plan"])
def test_parse_unterminated_header_fails(raw: str) -> None:
    with pytest.raises(ArtifactParseError, match="unterminated"):
        artifacts.parse(raw)


@pytest.mark.parametrize("header", ["session: [unclosed", "- just\n- a list"])
def test_parse_undecodable_header_fails(header: str) -> None:
    with pytest.raises(ArtifactParseError):
        artifacts.parse(f"---\n{header}\n---\nbody")


def test_phase_filename_table_and_fallback() -> None:
    assert artifacts.phase_filename(Phase.INVESTIGATE) == "investigation_summary.md"
    assert artifacts.phase_filename("plan") == "implementation_guide.md"
    assert artifacts.phase_filename("review") == "implementation_guide.md"
    assert artifacts.phase_filename(Phase.EXECUTE) == "execution_log.md"
    assert artifacts.phase_filename(Phase.VERIFY) == "verification_notes.md"
    assert artifacts.phase_filename(Phase.CONCLUDE) == "research_conclusions.md"
    assert artifacts.phase_filename(Phase.RECORD) == "milestone_ledger.md"
    assert artifacts.phase_filename("brainstorm") == "brainstorm.md"
    assert artifacts.phase_filename("brainstorm") == artifacts.phase_filename("brainstorm")


@pytest.mark.parametrize("table", [artifacts.PHASE_FILENAMES, artifacts.PHASE_MARKERS, artifacts.VERSIONED_PHASES])
def test_phase_tables_are_read_only(table: object) -> None:
    with pytest.raises(TypeError):
        table["brainstorm"] = "brainstorm.md"  # type: ignore[index]


def test_parse_keeps_trailing_body_whitespace_through_serialize() -> None:
    original = _artifact("record", "## Summary\nShipped.\n\n")
    assert artifacts.parse(artifacts.serialize(original)).body == "## Summary\nShipped.\n\n"


def test_validate_investigate_markers() -> None:
    artifacts.validate(_artifact("investigate", "## Executive Summary\nFindings here."), "investigate")
    with pytest.raises(ArtifactValidationError):
        artifacts.validate(_artifact("investigate", "Nothing relevant here."), "investigate")


def test_validate_is_case_insensitive_and_per_phase() -> None:
    artifacts.validate(_artifact("execute", "## EXECUTION SUMMARY\nDone."), Phase.EXECUTE)
    artifacts.validate(_artifact("record", "## File Manifest\n- a.py"), Phase.RECORD)
    with pytest.raises(ArtifactValidationError):
        artifacts.validate(_artifact("record", "## Executive Summary"), Phase.RECORD)


def test_validate_simplify_needs_no_artifact() -> None:
    artifacts.validate(None, Phase.SIMPLIFY)


def test_validate_unknown_phase_is_hard_failure() -> None:
    with pytest.raises(UnknownPhaseError):
        artifacts.validate(_artifact("brainstorm", "anything"), "brainstorm")


def test_store_and_load_session_level(home: CardHome) -> None:
    store = ArtifactStore(home)
    artifact = _artifact("plan", "## Implementation Steps\n1. Do it\n")
    path = store.store_session_level(artifact)

    assert path == home.session_dir("20260101-demo-abcd1234") / "implementation_guide.md"
    assert artifact.path == path
    assert path.read_text(encoding="utf-8").startswith("---\nsession: 20260101-demo-abcd1234\n")

    loaded = store.load("20260101-demo-abcd1234", Phase.PLAN)
    assert loaded.header == artifact.header
    assert loaded.body == artifact.body
    assert loaded.path == path


def test_store_repo_scoped_artifact(home: CardHome) -> None:
    store = ArtifactStore(home)
    path = store.store(_artifact("execute", "## Execution Summary\n"), "repo123")
    assert path == home.changes_dir("20260101-demo-abcd1234", "repo123") / "execution_log.md"
    assert path.is_file()


def test_store_version_keeps_recorded_path(home: CardHome) -> None:
    store = ArtifactStore(home)
    artifact = _artifact("execute", "## Execution Summary\nattempt 2\n")
    stored = store.store_session_level(artifact)
    version = store.store_version(artifact, Phase.EXECUTE, 2)

    assert version.name == "execution_log_v2.md"
    assert artifact.path == stored
    with pytest.raises(ValueError):
        store.store_version(artifact, Phase.PLAN, 1)


def test_store_requires_session_in_header(home: CardHome) -> None:
    with pytest.raises(ValueError):
        ArtifactStore(home).store_session_level(Artifact(body="orphan"))


def test_cleanup_intermediate_keeps_ledger_and_capsules(home: CardHome) -> None:
    store = ArtifactStore(home)
    session_id = "20260101-demo-abcd1234"
    for phase, body in (
        ("investigate", "## Executive Summary"),
        ("plan", "## Implementation Steps"),
        ("execute", "## Execution Summary"),
        ("verify", "## Verification Outcome"),
        ("record", "## Summary"),
    ):
        store.store_session_level(_artifact(phase, body))
    store.store_version(_artifact("execute", "v1"), Phase.EXECUTE, 1)
    store.store_version(_artifact("verify", "v1"), Phase.VERIFY, 1)
    capsules_path = home.capsules_path(session_id)
    capsules_path.write_text("# Decision Capsules\n", encoding="utf-8")

    removed = store.cleanup_intermediate(session_id)

    remaining = sorted(path.name for path in home.session_dir(session_id).iterdir() if path.is_file())
    assert remaining == ["capsules.md", "milestone_ledger.md"]
    assert {path.name for path in removed} == {
        "investigation_summary.md",
        "implementation_guide.md",
        "execution_log.md",
        "verification_notes.md",
        "execution_log_v1.md",
        "verification_notes_v1.md",
    }
