"""Tests for builds/history.py module.

Tests the commit protocol, the latest pointer, crash recovery and locking
against a real temporary directory.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest
from conftest import commit_record, make_record

from imagebuild.builds.history import (
    COMMIT_MARKER,
    INDEX_FILE,
    HistoryStore,
    StagingState,
    validate_build_id,
    write_json_atomic,
)
from imagebuild.errors import (
    CorruptHistory,
    HistoryLocked,
    ImageBuildError,
    IncompleteCommit,
    InputError,
    NotFound,
    ProtectedBuildError,
)
from imagebuild.types import RecoveryOutcome


def _interrupt_commit(store: HistoryStore, build_id: str, steps: str) -> Path:
    """Replay the commit protocol up to (and including) the given steps.

    ``steps`` is a string of step letters: a=marker, b=promote,
    c=latest, d=index.
    """
    staging = store.begin_staging()
    staging.write_meta(make_record(build_id, tree_commit=f"tree-{build_id}"))
    ids = store.read_index()
    if "a" in steps:
        write_json_atomic(
            store.marker_path,
            {"build_id": build_id, "staging": str(staging.path)},
        )
    if "b" in steps:
        os.rename(staging.path, store.build_dir(build_id))
    if "c" in steps:
        store._point_latest(build_id)
    if "d" in steps:
        store._write_index([build_id, *ids])
    return staging.path


class TestWriteJsonAtomic:
    """Tests for write_json_atomic function."""

    def test_writes_document(self, tmp_path: Path) -> None:
        """Should write the JSON document."""
        path = tmp_path / "doc.json"
        write_json_atomic(path, {"a": 1})
        assert json.loads(path.read_text()) == {"a": 1}

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        """Temporary files should not be left behind."""
        path = tmp_path / "doc.json"
        write_json_atomic(path, {"a": 1})
        write_json_atomic(path, {"a": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


class TestValidateBuildId:
    """Tests for validate_build_id function."""

    def test_accepts_versions(self) -> None:
        """Version strings with generation suffixes are valid."""
        assert validate_build_id("41.20240101.0-2") == "41.20240101.0-2"

    @pytest.mark.parametrize("bad", ["", "latest", ".staging", "a/b", "../x"])
    def test_rejects_unsafe(self, bad: str) -> None:
        """Ids that are not a single plain directory name are rejected."""
        with pytest.raises(InputError):
            validate_build_id(bad)


class TestCommit:
    """Tests for HistoryStore.commit."""

    def test_empty_history(self, store: HistoryStore) -> None:
        """An empty history has no latest build."""
        assert store.latest() is None
        assert store.list_ids() == []

    def test_commit_promotes_staging(self, store: HistoryStore) -> None:
        """Commit should move the staging area into place and point latest."""
        staging = store.begin_staging()
        staging_path = staging.path
        (staging.path / "image-qemu.img").write_bytes(b"disk")
        staging.write_meta(make_record("V1"))

        record = store.commit(staging, "V1")

        assert record.build_id == "V1"
        assert not staging_path.exists()
        assert (store.build_dir("V1") / "image-qemu.img").read_bytes() == b"disk"
        assert store.latest_link.is_symlink()
        assert os.readlink(store.latest_link) == "V1"
        assert store.list_ids() == ["V1"]
        assert not (store.root / COMMIT_MARKER).exists()
        assert store.latest() == record

    def test_index_newest_first(self, store: HistoryStore) -> None:
        """Index should list builds newest first."""
        commit_record(store, make_record("V1"))
        commit_record(store, make_record("V1-1", generation=1, config_checksum="cfg2"))
        commit_record(store, make_record("V2", tree_commit="tree2"))

        assert store.list_ids() == ["V2", "V1-1", "V1"]
        assert store.latest_id() == "V2"
        assert [r.build_id for r in store.list_builds()] == ["V2", "V1-1", "V1"]

    def test_index_document_format(self, store: HistoryStore) -> None:
        """Index should carry a schema version, timestamp and build list."""
        commit_record(store, make_record("V1"))

        data = json.loads((store.root / INDEX_FILE).read_text())
        assert data["schema-version"] == "1.0.0"
        assert data["builds"] == [{"id": "V1"}]
        assert data["timestamp"].endswith("Z")

    def test_duplicate_build_id(self, store: HistoryStore) -> None:
        """Committing an existing id should fail without touching history."""
        commit_record(store, make_record("V1"))

        with pytest.raises(ImageBuildError) as exc_info:
            commit_record(store, make_record("V1"))

        assert exc_info.value.code == "build_exists"
        assert store.list_ids() == ["V1"]

    def test_mismatched_staged_record(self, store: HistoryStore) -> None:
        """Staged record must carry the id being committed."""
        staging = store.begin_staging()
        staging.write_meta(make_record("V1"))

        with pytest.raises(InputError):
            store.commit(staging, "V2")

    def test_missing_staged_record(self, store: HistoryStore) -> None:
        """A staging area without meta.json cannot be committed."""
        staging = store.begin_staging()
        with pytest.raises(InputError):
            store.commit(staging, "V1")

    def test_refuses_with_pending_marker(self, store: HistoryStore) -> None:
        """An unrecovered commit blocks further commits."""
        _interrupt_commit(store, "V1", "ab")

        with pytest.raises(IncompleteCommit):
            commit_record(store, make_record("V2"))

    def test_commitmeta(self, store: HistoryStore) -> None:
        """Commit metadata should be readable after commit."""
        staging = store.begin_staging()
        staging.write_meta(make_record("V1"))
        staging.write_commitmeta({"version": "V1", "rpmostree.inputhash": "x"})
        store.commit(staging, "V1")

        assert store.read_commitmeta("V1") == {"version": "V1", "rpmostree.inputhash": "x"}
        assert store.read_commitmeta("missing") is None


class TestReads:
    """Tests for latest/get against inconsistent histories."""

    def test_get_unknown(self, store: HistoryStore) -> None:
        """Unknown ids return None."""
        commit_record(store, make_record("V1"))
        assert store.get("V9") is None

    def test_get_indexed_but_missing(self, store: HistoryStore) -> None:
        """An indexed build without a directory is corruption."""
        commit_record(store, make_record("V1"))
        commit_record(store, make_record("V2", tree_commit="tree2"))
        os.rename(store.build_dir("V1"), store.root / "elsewhere")

        with pytest.raises(CorruptHistory):
            store.get("V1")

    def test_corrupt_index(self, store: HistoryStore) -> None:
        """An unparseable index is corruption."""
        store.root.mkdir(parents=True)
        (store.root / INDEX_FILE).write_text("{not json")

        with pytest.raises(CorruptHistory):
            store.read_index()

    def test_index_without_builds(self, store: HistoryStore) -> None:
        """An index without a build list is corruption."""
        store.root.mkdir(parents=True)
        (store.root / INDEX_FILE).write_text('{"schema-version": "1.0.0"}')

        with pytest.raises(CorruptHistory):
            store.read_index()

    def test_latest_missing_with_builds(self, store: HistoryStore) -> None:
        """A missing latest pointer with a non-empty index is corruption."""
        commit_record(store, make_record("V1"))
        store.latest_link.unlink()

        with pytest.raises(CorruptHistory):
            store.latest()

    def test_latest_dangling(self, store: HistoryStore) -> None:
        """A latest pointer to a missing directory is corruption."""
        commit_record(store, make_record("V1"))
        store.latest_link.unlink()
        os.symlink("V9", store.latest_link)

        with pytest.raises(CorruptHistory):
            store.latest()

    def test_unparseable_meta(self, store: HistoryStore) -> None:
        """A broken meta.json is corruption."""
        commit_record(store, make_record("V1"))
        (store.build_dir("V1") / "meta.json").write_text("[]")

        with pytest.raises(CorruptHistory):
            store.latest()


class TestStaging:
    """Tests for staging area handling."""

    def test_begin_staging(self, store: HistoryStore) -> None:
        """New staging areas live under the history root with a blank state."""
        staging = store.begin_staging()

        assert staging.path.parent == store.staging_root
        assert staging.state_path.exists()
        assert staging.read_state().image_input_checksum is None

    def test_find_staging_by_checksum(self, store: HistoryStore) -> None:
        """Should find the staging area prepared for the same inputs."""
        first = store.begin_staging()
        first.write_state(StagingState(image_input_checksum="aaa"))
        second = store.begin_staging()
        second.write_state(StagingState(image_input_checksum="bbb"))

        found = store.find_staging("aaa")
        assert found is not None
        assert found.path == first.path
        assert store.find_staging("ccc") is None

    def test_unreadable_state(self, store: HistoryStore) -> None:
        """A broken staging state reads as blank."""
        staging = store.begin_staging()
        staging.state_path.write_text("garbage")

        state = staging.read_state()
        assert state.image_input_checksum is None
        assert state.artifacts == {}

    def test_created_at_is_utc(self, store: HistoryStore) -> None:
        """Staging timestamps are timezone-aware."""
        state = store.begin_staging().read_state()
        assert state.created_at.tzinfo is not None
        assert state.created_at <= datetime.now(timezone.utc)

    def test_discard(self, store: HistoryStore) -> None:
        """Discarding removes the staging directory."""
        staging = store.begin_staging()
        store.discard_staging(staging)

        assert not staging.path.exists()
        assert store.list_staging() == []

    def test_discard_stale_staging(self, store: HistoryStore) -> None:
        """Every staging area for the given inputs is dropped, others kept."""
        first = store.begin_staging()
        first.write_state(StagingState(image_input_checksum="aaa"))
        other = store.begin_staging()
        other.write_state(StagingState(image_input_checksum="bbb"))
        second = store.begin_staging()
        second.write_state(StagingState(image_input_checksum="aaa"))

        discarded = store.discard_stale_staging("aaa")

        assert [h.path for h in discarded] == [first.path, second.path]
        assert [h.path for h in store.list_staging()] == [other.path]


class TestRecovery:
    """Tests for HistoryStore.recover."""

    def test_clean(self, store: HistoryStore) -> None:
        """No marker means nothing to recover."""
        commit_record(store, make_record("V1"))
        assert store.recover() == RecoveryOutcome.CLEAN

    def test_interrupted_after_marker(self, store: HistoryStore) -> None:
        """A commit interrupted before promotion leaves history untouched."""
        commit_record(store, make_record("V1"))
        staging_path = _interrupt_commit(store, "V2", "a")

        assert store.recover() == RecoveryOutcome.DISCARDED
        assert store.list_ids() == ["V1"]
        assert store.latest_id() == "V1"
        assert staging_path.exists()
        assert store.pending_commit() is None

    def test_interrupted_after_promote(self, store: HistoryStore) -> None:
        """A promoted but unindexed build is discarded."""
        commit_record(store, make_record("V1"))
        _interrupt_commit(store, "V2", "ab")

        assert store.recover() == RecoveryOutcome.DISCARDED
        assert not store.build_dir("V2").exists()
        assert store.list_ids() == ["V1"]
        assert store.latest_id() == "V1"

    def test_interrupted_after_latest(self, store: HistoryStore) -> None:
        """A repointed but unindexed build is discarded and latest restored."""
        commit_record(store, make_record("V1"))
        _interrupt_commit(store, "V2", "abc")

        assert store.recover() == RecoveryOutcome.DISCARDED
        assert not store.build_dir("V2").exists()
        assert store.latest_id() == "V1"

    def test_interrupted_first_commit(self, store: HistoryStore) -> None:
        """Discarding the very first build leaves an empty history."""
        _interrupt_commit(store, "V1", "abc")

        assert store.recover() == RecoveryOutcome.DISCARDED
        assert not store.latest_link.exists()
        assert not store.latest_link.is_symlink()
        assert store.latest() is None

    def test_interrupted_after_index(self, store: HistoryStore) -> None:
        """A promoted and indexed build is trusted and latest repointed."""
        commit_record(store, make_record("V1"))
        _interrupt_commit(store, "V2", "abd")

        assert store.recover() == RecoveryOutcome.COMMITTED
        assert store.list_ids() == ["V2", "V1"]
        assert store.latest_id() == "V2"
        assert store.pending_commit() is None

    def test_interrupted_before_marker_clear(self, store: HistoryStore) -> None:
        """A commit that only missed clearing the marker is completed."""
        commit_record(store, make_record("V1"))
        _interrupt_commit(store, "V2", "abcd")

        assert store.recover() == RecoveryOutcome.COMMITTED
        assert store.latest_id() == "V2"

    def test_recover_is_idempotent(self, store: HistoryStore) -> None:
        """Running recovery twice should be harmless."""
        _interrupt_commit(store, "V1", "abd")

        assert store.recover() == RecoveryOutcome.COMMITTED
        assert store.recover() == RecoveryOutcome.CLEAN
        assert store.latest_id() == "V1"

    def test_manual_mode(self, store: HistoryStore) -> None:
        """Without auto recovery an interrupted commit raises."""
        _interrupt_commit(store, "V1", "ab")

        with pytest.raises(IncompleteCommit) as exc_info:
            store.recover(auto=False)

        assert exc_info.value.build_id == "V1"
        assert store.marker_path.exists()

    def test_malformed_marker(self, store: HistoryStore) -> None:
        """An unreadable marker needs manual intervention."""
        store.root.mkdir(parents=True)
        store.marker_path.write_text("{}")

        with pytest.raises(IncompleteCommit):
            store.recover()


class TestDelete:
    """Tests for HistoryStore.delete."""

    def test_delete(self, store: HistoryStore) -> None:
        """Deleting removes the index entry and the directory."""
        commit_record(store, make_record("V1"))
        commit_record(store, make_record("V2", tree_commit="tree2"))

        store.delete("V1")

        assert store.list_ids() == ["V2"]
        assert not store.build_dir("V1").exists()

    def test_delete_latest_refused(self, store: HistoryStore) -> None:
        """The latest build is protected."""
        commit_record(store, make_record("V1"))

        with pytest.raises(ProtectedBuildError):
            store.delete("V1")
        assert store.list_ids() == ["V1"]

    def test_delete_unknown(self, store: HistoryStore) -> None:
        """Deleting an unknown build raises NotFound."""
        with pytest.raises(NotFound):
            store.delete("V9")


class TestHistoryLock:
    """Tests for the advisory history lock."""

    def test_second_lock_fails_fast(self, store: HistoryStore) -> None:
        """A held lock should make a non-blocking acquire fail."""
        with store.lock():
            with pytest.raises(HistoryLocked) as exc_info:
                with store.lock():
                    pass

        assert exc_info.value.code == "history_locked"

    def test_lock_released(self, store: HistoryStore) -> None:
        """The lock can be taken again once released."""
        with store.lock():
            pass
        with store.lock():
            pass

