"""Tests for builds/merge.py module."""

from datetime import datetime, timezone

import pytest

from imagebuild.builds.merge import RunMetadata, merge_metadata
from imagebuild.builds.models import ComposeResult, SourceProvenance
from imagebuild.errors import InputError
from imagebuild.types import ArtifactInfo


@pytest.fixture
def run() -> RunMetadata:
    """Run metadata for a generation 1 build."""
    return RunMetadata(
        build_id="V1-1",
        version="V1",
        tree_commit="T1",
        image_input_checksum="i" * 64,
        config_checksum="c" * 64,
        generation=1,
        timestamp=datetime(2024, 3, 1, tzinfo=timezone.utc),
        name="fcos",
    )


@pytest.fixture
def artifacts() -> dict[str, ArtifactInfo]:
    """One qemu artifact."""
    return {
        "qemu": ArtifactInfo(
            kind="qemu", relative_path="fcos-qemu.img", size_bytes=4, sha256="a" * 64
        )
    }


class TestMergeMetadata:
    """Tests for merge_metadata function."""

    def test_merges_all_layers(self, run: RunMetadata, artifacts: dict) -> None:
        """Every source should contribute to the record."""
        compose = ComposeResult(
            tree_commit="T1", metadata={"version": "V1", "basearch": "x86_64"}
        )

        record = merge_metadata(
            compose,
            run,
            artifacts,
            SourceProvenance(config_gitrev="abc", config_dirty=True),
            extra={"pipeline": "nightly"},
        )

        assert record.build_id == "V1-1"
        assert record.generation == 1
        assert record.name == "fcos"
        assert record.artifacts["qemu"].path == "fcos-qemu.img"
        assert record.source_provenance.config_dirty is True
        assert record.extra_metadata == {"basearch": "x86_64", "pipeline": "nightly"}

    def test_image_settings_recorded(self, run: RunMetadata) -> None:
        """Disk size and kernel arguments from the definition are recorded."""
        run.size_gb = 8
        run.extra_kargs = ["console=ttyS0"]
        compose = ComposeResult(tree_commit="T1", metadata={"version": "V1"})

        record = merge_metadata(compose, run, {}, SourceProvenance())

        assert record.size_gb == 8
        assert record.extra_kargs == ["console=ttyS0"]
        assert record.to_meta()["image-size-gb"] == 8
        assert record.to_meta()["extra-kargs"] == ["console=ttyS0"]
        assert record.extra_metadata == {}

    def test_image_settings_absent(self, run: RunMetadata) -> None:
        """Without image settings the record carries no size."""
        compose = ComposeResult(tree_commit="T1", metadata={"version": "V1"})

        record = merge_metadata(compose, run, {}, SourceProvenance())

        assert record.size_gb is None
        assert record.extra_kargs == []
        assert "image-size-gb" not in record.to_meta()

    def test_run_overrides_compose(self, run: RunMetadata) -> None:
        """Run metadata wins over compose metadata for the same key."""
        compose = ComposeResult(
            tree_commit="T1", metadata={"version": "V1", "buildid": "stale"}
        )

        record = merge_metadata(compose, run, {}, SourceProvenance())

        assert record.build_id == "V1-1"

    def test_extra_overrides_other_keys(self, run: RunMetadata) -> None:
        """Extra metadata wins for non-identity keys."""
        compose = ComposeResult(tree_commit="T1", metadata={"summary": "from tree"})

        record = merge_metadata(
            compose, run, {}, SourceProvenance(), extra={"summary": "from ci"}
        )

        assert record.extra_metadata["summary"] == "from ci"

    def test_extra_cannot_change_identity(self, run: RunMetadata) -> None:
        """Extra metadata may not rewrite the build identity."""
        compose = ComposeResult(tree_commit="T1", metadata={})

        with pytest.raises(InputError) as exc_info:
            merge_metadata(
                compose, run, {}, SourceProvenance(), extra={"buildid": "other"}
            )

        assert exc_info.value.code == "metadata_conflict"

    def test_extra_may_repeat_identity(self, run: RunMetadata) -> None:
        """Repeating an identity key with the same value is allowed."""
        compose = ComposeResult(tree_commit="T1", metadata={})

        record = merge_metadata(
            compose, run, {}, SourceProvenance(), extra={"tree-commit": "T1"}
        )

        assert record.tree_commit == "T1"

    def test_provisional_ref_stripped(self, run: RunMetadata) -> None:
        """A provisional ref never reaches the record."""
        compose = ComposeResult(
            tree_commit="T1",
            metadata={"ref": "imagebuild/provisional"},
            provisional_ref=True,
        )

        record = merge_metadata(compose, run, {}, SourceProvenance())

        assert record.ref is None
        assert "ref" not in record.to_meta()

    def test_stable_ref_kept(self, run: RunMetadata) -> None:
        """A stable ref from the image definition is recorded."""
        run.ref = "fedora/x86_64/coreos/stable"
        compose = ComposeResult(tree_commit="T1", metadata={})

        record = merge_metadata(compose, run, {}, SourceProvenance())

        assert record.ref == "fedora/x86_64/coreos/stable"

    def test_invalid_merge(self, run: RunMetadata) -> None:
        """Extra metadata that breaks the schema is rejected."""
        compose = ComposeResult(tree_commit="T1", metadata={})

        with pytest.raises(InputError) as exc_info:
            merge_metadata(
                compose, run, {}, SourceProvenance(), extra={"images": "not-a-map"}
            )

        assert exc_info.value.code == "metadata_invalid"
