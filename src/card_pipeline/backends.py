"""Storage-level enforcement backends for in-process phase agents.

A phase's tool allowlist is enforced at the filesystem boundary of the agent
harness rather than in the prompt. The raw ``FilesystemBackend`` is wrapped so
that:

1. **Unrestricted phases** (execute, simplify) may write anywhere.
2. **Writing phases** (allowlist containing ``Write``) may only create or edit
   files under the phase output directory, where the artifact is expected.
3. **Read-only phases** (no ``Write`` in the allowlist) cannot write at all.

Composition order (innermost to outermost)::

    FilesystemBackend(working_dir, virtual_mode=False) -> PhaseWriteScopeBackend
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from deepagents.backends import FilesystemBackend
from deepagents.backends.protocol import (
    BackendProtocol,
    EditResult,
    FileDownloadResponse,
    FileInfo,
    FileUploadResponse,
    GrepMatch,
    WriteResult,
)

logger = logging.getLogger(__name__)


class PhaseWriteScopeBackend(BackendProtocol):
    """Confines writes to the phase output directory.

    Read operations (``read``, ``ls_info``, ``grep_raw``, ``glob_info``,
    ``download_files``) are always permitted.
    """

    _OUTSIDE_OUTPUT_ERROR = "Write blocked: {path} is outside the phase output directory {output_dir}"
    _READ_ONLY_ERROR = "Write blocked: this phase is read-only ({path})"

    def __init__(self, backend: BackendProtocol, *, output_dir: Path, allow_writes: bool) -> None:
        self._backend = backend
        self._output_dir = output_dir.resolve()
        self._allow_writes = allow_writes

    def _resolve(self, file_path: str) -> Path:
        """Resolve an agent path to an absolute filesystem path.

        Delegates to the inner backend's ``_resolve_path`` when available,
        falling back to a plain ``Path`` construction.
        """
        resolver = getattr(self._backend, "_resolve_path", None)
        if callable(resolver):
            return Path(resolver(file_path)).resolve()
        return Path(file_path).resolve()

    def _blocked_reason(self, file_path: str) -> str | None:
        if not self._allow_writes:
            return self._READ_ONLY_ERROR.format(path=file_path)
        resolved = self._resolve(file_path)
        if resolved == self._output_dir or self._output_dir in resolved.parents:
            return None
        return self._OUTSIDE_OUTPUT_ERROR.format(path=file_path, output_dir=self._output_dir)

    def ls_info(self, path: str) -> list[FileInfo]:
        """Delegate to inner backend -- reads are unrestricted."""
        return self._backend.ls_info(path)

    def read(self, file_path: str, offset: int = 0, limit: int = 2000) -> str:
        """Delegate to inner backend -- reads are unrestricted."""
        return self._backend.read(file_path, offset=offset, limit=limit)

    def grep_raw(self, pattern: str, path: str | None = None, glob: str | None = None) -> list[GrepMatch] | str:
        """Delegate to inner backend -- reads are unrestricted."""
        return self._backend.grep_raw(pattern, path=path, glob=glob)

    def glob_info(self, pattern: str, path: str = "/") -> list[FileInfo]:
        """Delegate to inner backend -- reads are unrestricted."""
        return self._backend.glob_info(pattern, path=path)

    def write(self, file_path: str, content: str) -> WriteResult:
        reason = self._blocked_reason(file_path)
        if reason is not None:
            logger.warning(reason)
            return WriteResult(error=reason)
        return self._backend.write(file_path, content)

    def edit(self, file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        reason = self._blocked_reason(file_path)
        if reason is not None:
            logger.warning(reason)
            return EditResult(error=reason)
        return self._backend.edit(file_path, old_string, new_string, replace_all=replace_all)

    def upload_files(self, files: list[tuple[str, bytes]]) -> list[FileUploadResponse]:
        """Upload files, rejecting the whole batch if any target is out of scope."""
        blocked = [(path, reason) for path, _ in files if (reason := self._blocked_reason(path)) is not None]
        if blocked:
            return [FileUploadResponse(path=path, error=reason) for path, reason in blocked]
        return self._backend.upload_files(files)

    def download_files(self, paths: list[str]) -> list[FileDownloadResponse]:
        """Delegate to inner backend -- reads are unrestricted."""
        return self._backend.download_files(paths)


def build_phase_backend(
    working_dir: Path,
    output_dir: Path,
    allowed_tools: Sequence[str] | None,
) -> BackendProtocol:
    """Construct the filesystem backend for one phase run.

    Args:
        working_dir: Directory relative paths resolve against.
        output_dir: The only writable directory for restricted phases.
        allowed_tools: The phase allowlist; ``None`` means unrestricted.

    Returns:
        The raw backend for unrestricted phases, otherwise the write-scoped wrapper.
    """
    base = FilesystemBackend(root_dir=working_dir, virtual_mode=False)
    if allowed_tools is None:
        return base
    return PhaseWriteScopeBackend(base, output_dir=output_dir, allow_writes="Write" in allowed_tools)
