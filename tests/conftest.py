"""Shared fixtures for imagebuild tests."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from imagebuild.builds.checksum import input_checksum
from imagebuild.builds.history import HistoryStore
from imagebuild.builds.models import ArtifactEntry, BuildRecord, ComposeResult
from imagebuild.errors import CollaboratorFailure


def make_record(
    build_id: str,
    tree_commit: str = "tree1",
    config_checksum: str = "cfg1",
    generation: int = 0,
    version: str | None = None,
    timestamp: datetime | None = None,
    artifacts: dict[str, ArtifactEntry] | None = None,
    **extra,
) -> BuildRecord:
    """Build a valid BuildRecord with sensible defaults."""
    return BuildRecord.model_validate(
        {
            "buildid": build_id,
            "version": version or build_id.split("-")[0],
            "tree-commit": tree_commit,
            "image-input-checksum": input_checksum(tree_commit, config_checksum),
            "image-config-checksum": config_checksum,
            "image-genver": generation,
            "timestamp": timestamp or datetime(2024, 1, 1, tzinfo=timezone.utc),
            "images": artifacts or {},
            **extra,
        }
    )


def commit_record(
    store: HistoryStore,
    record: BuildRecord,
    files: dict[str, bytes] | None = None,
) -> BuildRecord:
    """Stage a record (and optional files) and commit it."""
    staging = store.begin_staging()
    for name, content in (files or {}).items():
        (staging.path / name).write_bytes(content)
    staging.write_meta(record)
    return store.commit(staging, record.build_id)


@pytest.fixture
def store(tmp_path: Path) -> HistoryStore:
    """An empty build history."""
    return HistoryStore(tmp_path / "builds")


class FakeComposer:
    """Compose tool returning a configurable tree."""

    def __init__(self, tree: str = "T1", version: str | None = "V1") -> None:
        self.tree = tree
        self.version = version
        self.calls = 0
        self.last_extra: dict | None = None
        self.fail = False

    def compose(self, cache_only, extra_metadata, output_dir, ref=None):
        self.calls += 1
        self.last_extra = extra_metadata
        if self.fail:
            raise CollaboratorFailure("compose failed", stage="compose_or_skip")
        metadata = {"tree-commit": self.tree}
        if self.version:
            metadata["version"] = self.version
        return ComposeResult(
            tree_commit=self.tree, metadata=metadata, provisional_ref=ref is None
        )


class FakeImageGenerator:
    """Image tool writing a small file per variant."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.sizes: dict[str, int | None] = {}

    def generate(self, tree_ref, output_path, variant, log_path, size_gb=None):
        self.calls.append(variant)
        self.sizes[variant] = size_gb
        if variant in self.failing:
            raise CollaboratorFailure(
                f"{variant} failed",
                stage="image_build",
                artifact_kind=variant,
                log_path=log_path,
            )
        output_path.write_bytes(f"{tree_ref}:{variant}".encode())
