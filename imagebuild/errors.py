"""Error taxonomy for imagebuild.

Every error carries a stable ``code`` string so callers (CLI JSON output,
the run journal) can report failures in a structured way.
"""

from __future__ import annotations

from pathlib import Path


class ImageBuildError(Exception):
    """Base error for all imagebuild operations."""

    def __init__(self, message: str, code: str = "imagebuild_error") -> None:
        super().__init__(message)
        self.code = code


class InputError(ImageBuildError):
    """Raised when configuration or build input is missing or malformed."""

    def __init__(self, message: str, code: str = "input_error") -> None:
        super().__init__(message, code=code)


class CollaboratorFailure(ImageBuildError):
    """Raised when an external tool fails.

    Attributes:
        stage: Coordinator stage that invoked the tool.
        artifact_kind: Image variant being produced, if any.
        exit_code: Process exit code (None if it never started).
        log_path: Log file capturing the tool output.
        failures: Per-kind failures when several variants failed together.
    """

    def __init__(
        self,
        message: str,
        stage: str,
        artifact_kind: str | None = None,
        exit_code: int | None = None,
        log_path: Path | None = None,
        failures: dict[str, CollaboratorFailure] | None = None,
        code: str = "collaborator_failure",
    ) -> None:
        super().__init__(message, code=code)
        self.stage = stage
        self.artifact_kind = artifact_kind
        self.exit_code = exit_code
        self.log_path = log_path
        self.failures = failures or {}


class NoResumableState(ImageBuildError):
    """Raised when a resume was requested but nothing can be resumed."""

    def __init__(self, message: str, code: str = "no_resumable_state") -> None:
        super().__init__(message, code=code)


class CorruptHistory(ImageBuildError):
    """Raised when the build history is inconsistent on disk."""

    def __init__(self, message: str, code: str = "corrupt_history") -> None:
        super().__init__(message, code=code)


class IncompleteCommit(ImageBuildError):
    """Raised when an interrupted commit needs manual intervention."""

    def __init__(
        self,
        message: str,
        build_id: str | None = None,
        code: str = "incomplete_commit",
    ) -> None:
        super().__init__(message, code=code)
        self.build_id = build_id


class HistoryLocked(ImageBuildError):
    """Raised when another run holds the history lock."""

    def __init__(self, history_root: Path, code: str = "history_locked") -> None:
        super().__init__(
            f"Build history is locked by another run: {history_root}", code=code
        )
        self.history_root = history_root


class NotFound(ImageBuildError):
    """Raised when a build id is absent from the history."""

    def __init__(self, build_id: str, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}", code=code)
        self.build_id = build_id


class ProtectedBuildError(ImageBuildError):
    """Raised when deleting the build that ``latest`` points to."""

    def __init__(self, build_id: str, code: str = "build_protected") -> None:
        super().__init__(
            f"Refusing to delete build {build_id}: it is the latest build",
            code=code,
        )
        self.build_id = build_id


__all__ = [
    "CollaboratorFailure",
    "CorruptHistory",
    "HistoryLocked",
    "ImageBuildError",
    "IncompleteCommit",
    "InputError",
    "NoResumableState",
    "NotFound",
    "ProtectedBuildError",
]
