"""Tests for builds/decision.py module."""

from datetime import datetime, timezone

import pytest
from conftest import make_record

from imagebuild.builds.checksum import input_checksum
from imagebuild.builds.compose_cache import CachedCompose
from imagebuild.builds.decision import (
    decide,
    format_build_id,
    resolve_resume_source,
)
from imagebuild.builds.models import ComposeResult
from imagebuild.errors import NoResumableState
from imagebuild.types import DecisionAction


class TestFormatBuildId:
    """Tests for format_build_id function."""

    def test_generation_zero(self) -> None:
        """Generation 0 uses the bare version."""
        assert format_build_id("41.20240101.0", 0) == "41.20240101.0"

    def test_generation_suffix(self) -> None:
        """Later generations append a suffix."""
        assert format_build_id("41.20240101.0", 2) == "41.20240101.0-2"


class TestDecide:
    """Tests for decide function."""

    def test_first_build(self) -> None:
        """No previous build means a full build at generation 0."""
        decision = decide(None, "T1", "C1", "V1")

        assert decision.action == DecisionAction.FULL_BUILD
        assert decision.build_id == "V1"
        assert decision.generation == 0
        assert decision.image_input_checksum == input_checksum("T1", "C1")
        assert decision.should_build

    def test_unchanged_inputs_skip(self) -> None:
        """Same image input checksum skips the build."""
        previous = make_record("V1", tree_commit="T1", config_checksum="C1")

        decision = decide(previous, "T1", "C1", "V1", existing_ids=["V1"])

        assert decision.action == DecisionAction.SKIP
        assert not decision.should_build
        assert decision.build_id == "V1"

    def test_skip_ignores_missing_artifacts(self) -> None:
        """Skip wins even when the previous build has no artifacts at all."""
        previous = make_record("V1", tree_commit="T1", config_checksum="C1")
        assert previous.artifacts == {}

        assert decide(previous, "T1", "C1", "V1").action == DecisionAction.SKIP

    def test_config_change_bumps_generation(self) -> None:
        """Same tree with a new config bumps the generation."""
        previous = make_record("V1", tree_commit="T1", config_checksum="C1")

        decision = decide(previous, "T1", "C2", "V1", existing_ids=["V1"])

        assert decision.action == DecisionAction.REBUILD_IMAGE
        assert decision.generation == 1
        assert decision.build_id == "V1-1"

    def test_generation_monotonic(self) -> None:
        """Consecutive config changes keep increasing the generation."""
        previous = make_record("V1-3", tree_commit="T1", config_checksum="C3", generation=3)

        decision = decide(previous, "T1", "C4", "V1")

        assert decision.generation == 4
        assert decision.build_id == "V1-4"

    def test_new_tree_resets_generation(self) -> None:
        """A new tree starts over at generation 0 with its own version."""
        previous = make_record("V1-1", tree_commit="T1", config_checksum="C2", generation=1)

        decision = decide(previous, "T2", "C2", "V2")

        assert decision.action == DecisionAction.FULL_BUILD
        assert decision.generation == 0
        assert decision.build_id == "V2"

    def test_force_overrides_skip(self) -> None:
        """Force builds even with unchanged inputs."""
        previous = make_record("V1", tree_commit="T1", config_checksum="C1")

        decision = decide(previous, "T1", "C1", "V1", force=True, existing_ids=["V1"])

        assert decision.action == DecisionAction.REBUILD_IMAGE
        assert decision.build_id == "V1-1"

    def test_collision_bumps_generation(self) -> None:
        """An id that already exists is never reused."""
        previous = make_record("V1-1", tree_commit="T1", config_checksum="C2", generation=1)

        decision = decide(previous, "T2", "C2", "V1", existing_ids=["V1-1", "V1"])

        assert decision.action == DecisionAction.FULL_BUILD
        assert decision.build_id == "V1-2"
        assert decision.generation == 2


class TestResolveResumeSource:
    """Tests for resolve_resume_source function."""

    def test_prefers_cache(self) -> None:
        """A cached compose output is used first."""
        cached = CachedCompose(
            result=ComposeResult(tree_commit="T5", metadata={"version": "V5"}),
            cached_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        previous = make_record("V1", tree_commit="T1")

        result = resolve_resume_source(cached, previous)

        assert result.tree_commit == "T5"
        assert result.version == "V5"
        assert result.changed is False

    def test_falls_back_to_previous(self) -> None:
        """Without a cache the previous build's tree is used."""
        previous = make_record("V1", tree_commit="T1")

        result = resolve_resume_source(None, previous, {"version": "V1", "arch": "x86_64"})

        assert result.tree_commit == "T1"
        assert result.version == "V1"
        assert result.metadata["arch"] == "x86_64"
        assert result.metadata["tree-commit"] == "T1"
        assert result.provisional_ref is True

    def test_previous_without_commitmeta(self) -> None:
        """The previous record's own version is enough."""
        previous = make_record("V1-2", tree_commit="T1", version="V1", ref="stream/stable")

        result = resolve_resume_source(None, previous)

        assert result.version == "V1"
        assert result.metadata["ref"] == "stream/stable"
        assert result.provisional_ref is False

    def test_nothing_to_resume(self) -> None:
        """No cache and no previous build cannot be resumed."""
        with pytest.raises(NoResumableState):
            resolve_resume_source(None, None)
