"""Shared type definitions for imagebuild.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildStage(str, Enum):
    """States of the build transaction state machine."""

    INIT = "init"
    COMPOSE_OR_SKIP = "compose_or_skip"
    SKIPPED = "skipped"
    COMPOSED = "composed"
    IMAGE_BUILD = "image_build"
    METADATA_MERGE = "metadata_merge"
    COMMIT = "commit"
    PRUNE = "prune"
    DONE = "done"
    ABORTED = "aborted"


class DecisionAction(str, Enum):
    """Outcome of the incremental decision."""

    SKIP = "skip"
    REBUILD_IMAGE = "rebuild_image"
    FULL_BUILD = "full_build"


class RunStatus(str, Enum):
    """Status of one coordinator invocation."""

    RUNNING = "running"
    BUILT = "built"
    SKIPPED = "skipped"
    FAILED = "failed"


class RecoveryOutcome(str, Enum):
    """Result of startup crash recovery."""

    CLEAN = "clean"
    COMMITTED = "committed"
    DISCARDED = "discarded"


@dataclass
class ArtifactInfo:
    """Information about one produced image artifact."""

    kind: str
    relative_path: str
    size_bytes: int
    sha256: str


@dataclass
class PruneResult:
    """Result of a retention pass."""

    pruned: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    dry_run: bool = False


__all__ = [
    "ArtifactInfo",
    "BuildStage",
    "DecisionAction",
    "PruneResult",
    "RecoveryOutcome",
    "RunStatus",
]
