from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Iterable

from . import artifacts
from .errors import RepoNotFoundError
from .models import Artifact, Phase, Session
from .recall import CapsuleRecall, RecallQuery, format_context
from .repos import RepoRegistry
from .runtime import repo_request_path

logger = logging.getLogger(__name__)

NON_INTERACTIVE_TRIGGER = "Go"

DECISION_FORMAT = (
    "Record every significant decision or finding in the artifact body using this exact format:\n\n"
    "### Decision: <the question that was decided>\n"
    "- **Choice:** <what was chosen>\n"
    "- **Alternatives:** <comma-separated options considered>\n"
    "- **Rationale:** <why>\n"
    "- **Significance:** architectural | implementation | context\n"
    "- **Tags:** <comma-separated files, tables, services or concepts>\n"
)

REPO_REQUEST_FORMAT = (
    "If the work needs a repository that is not part of this session, request it by writing {path}:\n\n"
    "repos:\n"
    "  - path: <local checkout path>\n"
    "    reason: <why it is needed>\n"
    "  - remote: <git remote URL of an already registered repo>\n"
    "    reason: <why it is needed>\n\n"
    "Requested repositories join the session once this phase completes."
)

_PHASE_INSTRUCTIONS: dict[Phase, str] = {
    Phase.INVESTIGATE: (
        "You are investigating the codebase before any change is planned. Explore the repositories, "
        "discuss findings with the operator, and do not modify source files. Write an artifact that opens "
        "with a '## Executive Summary' section followed by the relevant code paths, risks and open questions."
    ),
    Phase.PLAN: (
        "You are producing an implementation guide from the investigation. Do not modify source files. "
        "The artifact must contain a '## Implementation Steps' section with numbered, verifiable steps."
    ),
    Phase.REVIEW: (
        "You are reviewing the implementation guide with the operator. Tighten the steps, resolve open "
        "questions, and rewrite the guide in place keeping its '## Implementation Steps' section."
    ),
    Phase.EXECUTE: (
        "You are implementing the approved implementation guide in the repositories. Make the code changes, "
        "run the relevant builds and tests, and write an artifact with an '## Execution Summary' section "
        "listing what changed, what was tested and any deviation from the guide."
    ),
    Phase.VERIFY: (
        "You are verifying the execution against the implementation guide. Inspect the diff, run the tests, "
        "and write an artifact with a '## Verification Outcome' section and an '## Issues Identified' section."
    ),
    Phase.SIMPLIFY: (
        "You are simplifying the change that was just verified. Remove dead code, needless indirection and "
        "duplicated logic introduced by the change without altering behaviour. No artifact is required."
    ),
    Phase.CONCLUDE: (
        "You are concluding a research session. Synthesize the investigation into an artifact with "
        "'## Findings', '## Conclusions' and '## Recommendations' sections."
    ),
    Phase.RECORD: (
        "You are recording the permanent milestone ledger for this session. Write an artifact with a "
        "'## Summary' section and a '## File Manifest' section listing every touched file as '- path: note'."
    ),
}


def recent_git_log(path: str, limit: int = 20) -> str:
    try:
        result = subprocess.run(
            ["git", "-C", path, "log", "--oneline", f"-{limit}"],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return "(unable to read git log)"
    return result.stdout.strip() if result.returncode == 0 else "(unable to read git log)"


class PromptBuilder:
    """Renders the system prompt and initial message for a phase."""

    def __init__(
        self,
        repos: RepoRegistry,
        *,
        include_git_log: bool = True,
        recall: CapsuleRecall | None = None,
        recall_max_capsules: int = 10,
        recall_max_tokens: int = 5000,
    ) -> None:
        self.repos = repos
        self.include_git_log = include_git_log
        self.recall = recall
        self.recall_max_capsules = recall_max_capsules
        self.recall_max_tokens = recall_max_tokens

    def repo_section(self, session: Session) -> str:
        lines = ["## Repositories in this session"]
        for repo_id in session.repos:
            try:
                repo = self.repos.get(repo_id)
            except (RepoNotFoundError, ValueError) as exc:
                logger.warning("Unable to load repo %s for prompt: %s", repo_id, exc)
                lines.append(f"\n- {repo_id} (unable to load)")
                continue
            lines.append(f"\n### {repo.name} ({repo.id})\n- Path: {repo.path}\n- Remote: {repo.remote_url or '(none)'}")
            if self.include_git_log:
                lines.append(f"- Recent git log:\n{recent_git_log(repo.path)}")
        return "\n".join(lines)

    def system_prompt(
        self,
        session: Session,
        phase: Phase,
        output_dir: Path,
        prior_artifacts: Iterable[Artifact] = (),
    ) -> str:
        filename = artifacts.phase_filename(phase)
        sections = [
            f"# {phase.value.capitalize()} phase",
            _PHASE_INSTRUCTIONS[phase],
            f"Session: {session.id}\nDescription: {session.description}",
        ]
        if phase is not Phase.SIMPLIFY:
            sections.append(
                f"Write your artifact to {output_dir / filename}. Begin it with YAML frontmatter:\n\n"
                f"---\nsession: {session.id}\nphase: {phase.value}\nrepos: [{', '.join(session.repos)}]\n"
                "status: final\n---"
            )
            sections.append(DECISION_FORMAT)
        if phase in (Phase.INVESTIGATE, Phase.EXECUTE):
            sections.append(REPO_REQUEST_FORMAT.format(path=repo_request_path(output_dir)))
        if phase is Phase.INVESTIGATE:
            recalled = self.recalled_context(session)
            if recalled:
                sections.append(recalled)
        if phase in (Phase.EXECUTE, Phase.VERIFY) and session.execution_history:
            sections.append(self._execution_history(session))
        prior = [artifact for artifact in prior_artifacts if artifact.body.strip()]
        if prior:
            rendered = "\n\n---\n\n".join(
                f"### {artifacts.phase_filename(item.header.phase)}\n{item.body}" for item in prior
            )
            sections.append(f"## Prior artifacts\n\n{rendered}")
        return "\n\n".join(sections)

    def initial_message(self, session: Session, phase: Phase, *, non_interactive: bool) -> str:
        message = f"CARD\n\n{phase.value.capitalize()} for session: {session.id}\n\nDescription: {session.description}"
        if session.context:
            message += f"\n\n## Operator-Provided Context\n\n{session.context}"
        message += "\n\n" + self.repo_section(session)
        if non_interactive:
            message += f"\n\n{NON_INTERACTIVE_TRIGGER}"
        return message

    def recalled_context(self, session: Session) -> str:
        """Prior decisions for every repo in the session, one block per repo."""
        if self.recall is None:
            return ""
        parts: list[str] = []
        for repo_id in session.repos:
            try:
                repo = self.repos.get(repo_id)
            except (RepoNotFoundError, ValueError) as exc:
                logger.warning("Skipping recall for repo %s: %s", repo_id, exc)
                continue
            result = self.recall.query(
                RecallQuery(
                    repo_id=repo.id,
                    repo_path=repo.path,
                    max_capsules=self.recall_max_capsules,
                    exclude_session=session.id,
                )
            )
            formatted = format_context(result, self.recall_max_tokens)
            if formatted:
                logger.info("Recalled %d decisions for %s", len(result.capsules), repo.name)
                parts.append(f"### {repo.name} ({repo.id})\n{formatted}")
        return "\n\n---\n\n".join(parts)

    @staticmethod
    def _execution_history(session: Session) -> str:
        lines = [f"## Execution history ({len(session.execution_history)} attempts)"]
        for attempt in session.execution_history:
            line = f"- Attempt {attempt.attempt} ({attempt.started_at:%Y-%m-%d %H:%M}): {attempt.outcome.value}"
            if attempt.reason:
                line += f" - {attempt.reason}"
            lines.append(line)
        if len(session.execution_history) > 1:
            previous = session.execution_history[-2]
            lines.append(
                f"\nThis is a re-execution. The previous attempt ended as {previous.outcome.value}"
                + (f": {previous.reason}" if previous.reason else ".")
                + " Address the verification issues before anything else."
            )
        return "\n".join(lines)
