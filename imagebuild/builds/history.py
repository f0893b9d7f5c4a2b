"""Build history store.

This module owns the on-disk layout of the build history:

    <root>/builds.json            index, newest first
    <root>/latest -> <build_id>   relative symlink
    <root>/<build_id>/meta.json   BuildRecord
    <root>/<build_id>/commitmeta.json
    <root>/.staging/<name>/       staging areas of in-flight or failed runs
    <root>/.commit-in-progress    write-ahead commit marker
    <root>/.lock                  advisory lock

A commit writes the marker, renames the staging directory into place,
repoints ``latest``, prepends to the index and clears the marker. Every
step is an atomic rename, so readers only ever see fully committed builds.
``recover()`` redoes or undoes a commit interrupted between those steps
and must run before any other read on startup.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import shutil
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from imagebuild.builds.models import ArtifactEntry, BuildRecord
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

logger = logging.getLogger(__name__)

INDEX_FILE = "builds.json"
INDEX_SCHEMA_VERSION = "1.0.0"
LATEST_LINK = "latest"
META_FILE = "meta.json"
COMMITMETA_FILE = "commitmeta.json"
STAGING_DIR = ".staging"
STAGING_STATE_FILE = "staging.json"
COMMIT_MARKER = ".commit-in-progress"
LOCK_FILE = ".lock"

BUILD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.+\-]*$")


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via a temporary file and ``os.replace``.

    Args:
        path: Destination path.
        data: JSON-serializable document.
    """
    tmp_path = path.with_name(f".{path.name}.tmp-{uuid.uuid4().hex[:8]}")
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _read_json(path: Path) -> Any:
    with path.open(encoding="utf-8") as f:
        return json.load(f)


def validate_build_id(build_id: str) -> str:
    """Validate a build id is usable as a single directory name.

    Raises:
        InputError: If the id is empty, hidden or contains path separators.
    """
    if not BUILD_ID_PATTERN.match(build_id) or build_id == LATEST_LINK:
        raise InputError(f"Invalid build id: {build_id!r}", code="invalid_build_id")
    return build_id


@contextmanager
def history_lock(root: Path, blocking: bool = False) -> Iterator[None]:
    """Hold the exclusive advisory lock on a history root.

    Args:
        root: History root directory.
        blocking: Wait for the lock instead of failing fast.

    Yields:
        None when the lock is held.

    Raises:
        HistoryLocked: If not blocking and another process holds the lock.
    """
    root.mkdir(parents=True, exist_ok=True)
    lock_file = root / LOCK_FILE

    logger.debug("Acquiring history lock: %s", lock_file)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if blocking:
            fcntl.flock(fd, fcntl.LOCK_EX)
        else:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise HistoryLocked(root) from None
        lock_acquired = True

        logger.debug("History lock acquired: %s", lock_file)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("History lock released: %s", lock_file)
        os.close(fd)


class StagingState(BaseModel):
    """Persisted description of a staging area.

    Attributes:
        build_id: Build id the attempt was going to commit as.
        tree_commit: Tree the images are generated from.
        image_input_checksum: Inputs the attempt was built for.
        artifacts: Artifacts already produced, by kind.
        created_at: When the staging area was allocated.
    """

    model_config = ConfigDict(extra="ignore")

    build_id: str | None = None
    tree_commit: str | None = None
    image_input_checksum: str | None = None
    artifacts: dict[str, ArtifactEntry] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class StagingHandle:
    """A mutable, not-yet-committed build directory."""

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def state_path(self) -> Path:
        return self.path / STAGING_STATE_FILE

    def read_state(self) -> StagingState:
        """Read the staging state, or a blank one if it is missing or unreadable."""
        if not self.state_path.exists():
            return StagingState()
        try:
            return StagingState.model_validate(_read_json(self.state_path))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable staging state %s: %s", self.state_path, e)
            return StagingState()

    def write_state(self, state: StagingState) -> None:
        write_json_atomic(self.state_path, state.model_dump(mode="json"))

    def write_meta(self, record: BuildRecord) -> Path:
        """Write the build record into the staging area."""
        path = self.path / META_FILE
        write_json_atomic(path, record.to_meta())
        return path

    def write_commitmeta(self, document: dict[str, Any]) -> Path:
        """Write the package-level provenance document into the staging area."""
        path = self.path / COMMITMETA_FILE
        write_json_atomic(path, document)
        return path


class HistoryStore:
    """Ordered, append-mostly store of committed build records.

    Args:
        root: History root directory; created on first write.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    @property
    def latest_link(self) -> Path:
        return self.root / LATEST_LINK

    @property
    def marker_path(self) -> Path:
        return self.root / COMMIT_MARKER

    @property
    def staging_root(self) -> Path:
        return self.root / STAGING_DIR

    def build_dir(self, build_id: str) -> Path:
        return self.root / build_id

    def lock(self, blocking: bool = False) -> Any:
        """Return a context manager holding the history lock."""
        return history_lock(self.root, blocking=blocking)

    # Index

    def read_index(self) -> list[str]:
        """Read the index.

        Returns:
            Build ids, newest first. Empty if the index does not exist.

        Raises:
            CorruptHistory: If the index cannot be parsed.
        """
        if not self.index_path.exists():
            return []
        try:
            data = _read_json(self.index_path)
        except (OSError, ValueError) as e:
            raise CorruptHistory(f"Cannot read build index {self.index_path}: {e}") from e

        builds = data.get("builds") if isinstance(data, dict) else None
        if not isinstance(builds, list):
            raise CorruptHistory(f"Build index has no 'builds' list: {self.index_path}")

        ids: list[str] = []
        for entry in builds:
            build_id = entry.get("id") if isinstance(entry, dict) else None
            if not isinstance(build_id, str):
                raise CorruptHistory(f"Malformed entry in build index: {entry!r}")
            ids.append(build_id)
        return ids

    def _write_index(self, ids: list[str]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        write_json_atomic(
            self.index_path,
            {
                "schema-version": INDEX_SCHEMA_VERSION,
                "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "builds": [{"id": build_id} for build_id in ids],
            },
        )

    def list_ids(self) -> list[str]:
        """Committed build ids, newest first."""
        return self.read_index()

    def contains(self, build_id: str) -> bool:
        return build_id in self.read_index()

    # Records

    def _load_record(self, build_id: str) -> BuildRecord:
        meta_path = self.build_dir(build_id) / META_FILE
        try:
            return BuildRecord.from_meta(_read_json(meta_path))
        except (OSError, ValueError) as e:
            # ValidationError is a ValueError
            raise CorruptHistory(
                f"Cannot load metadata of build {build_id} from {meta_path}: {e}"
            ) from e

    def read_commitmeta(self, build_id: str) -> dict[str, Any] | None:
        """Read a build's commit metadata document, if it has one."""
        path = self.build_dir(build_id) / COMMITMETA_FILE
        if not path.exists():
            return None
        try:
            data = _read_json(path)
        except (OSError, ValueError) as e:
            raise CorruptHistory(f"Cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise CorruptHistory(f"Commit metadata is not an object: {path}")
        return data

    def _read_latest_target(self) -> str | None:
        if not self.latest_link.is_symlink():
            return None
        return Path(os.readlink(self.latest_link)).name

    def latest_id(self) -> str | None:
        """Build id the ``latest`` pointer references.

        Raises:
            CorruptHistory: If the pointer is missing while the index is not
                empty, or it references a missing directory.
        """
        target = self._read_latest_target()
        if target is None:
            if self.latest_link.exists():
                raise CorruptHistory(f"{self.latest_link} is not a symlink")
            if self.read_index():
                raise CorruptHistory(
                    f"Build index is not empty but {self.latest_link} is missing"
                )
            return None
        if not self.build_dir(target).is_dir():
            raise CorruptHistory(f"{self.latest_link} points to missing build {target}")
        return target

    def latest(self) -> BuildRecord | None:
        """Load the most recently committed build.

        Returns:
            BuildRecord, or None if nothing was ever committed.

        Raises:
            CorruptHistory: If the pointer target is missing or unparseable.
        """
        build_id = self.latest_id()
        if build_id is None:
            return None
        return self._load_record(build_id)

    def get(self, build_id: str) -> BuildRecord | None:
        """Load a committed build by id, or None if it is not in the index."""
        if build_id not in self.read_index():
            return None
        if not self.build_dir(build_id).is_dir():
            raise CorruptHistory(f"Build {build_id} is indexed but its directory is missing")
        return self._load_record(build_id)

    def list_builds(self) -> list[BuildRecord]:
        """Load every committed build, newest first."""
        return [self._load_record(build_id) for build_id in self.read_index()]

    # Staging

    def begin_staging(self) -> StagingHandle:
        """Allocate a fresh staging area.

        Staging areas live under the history root so promotion is a
        same-filesystem rename.
        """
        self.staging_root.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.staging_root / f"{stamp}-{uuid.uuid4().hex[:8]}"
        path.mkdir()
        handle = StagingHandle(path=path)
        handle.write_state(StagingState())
        logger.debug("Allocated staging area %s", path)
        return handle

    def list_staging(self) -> list[StagingHandle]:
        """Staging areas left behind by earlier runs, oldest first."""
        if not self.staging_root.is_dir():
            return []
        return [
            StagingHandle(path=p)
            for p in sorted(self.staging_root.iterdir())
            if p.is_dir()
        ]

    def find_staging(self, image_input_checksum: str) -> StagingHandle | None:
        """Find the newest staging area prepared for the same inputs."""
        for handle in reversed(self.list_staging()):
            if handle.read_state().image_input_checksum == image_input_checksum:
                return handle
        return None

    def discard_staging(self, handle: StagingHandle) -> None:
        logger.info("Discarding staging area %s", handle.path)
        shutil.rmtree(handle.path)

    def discard_stale_staging(self, image_input_checksum: str) -> list[StagingHandle]:
        """Drop staging areas prepared for inputs that are now committed.

        Only the newest matching area is ever resumed, so older attempts at
        the same inputs would otherwise stay behind forever.

        Returns:
            The discarded staging areas.
        """
        stale = [
            handle
            for handle in self.list_staging()
            if handle.read_state().image_input_checksum == image_input_checksum
        ]
        for handle in stale:
            self.discard_staging(handle)
        return stale

    # Commit

    def _point_latest(self, build_id: str) -> None:
        tmp_link = self.root / f".{LATEST_LINK}.tmp-{uuid.uuid4().hex[:8]}"
        os.symlink(build_id, tmp_link)
        try:
            os.replace(tmp_link, self.latest_link)
        except OSError:
            tmp_link.unlink()
            raise

    def commit(self, staging: StagingHandle, build_id: str) -> BuildRecord:
        """Promote a staging area to a committed build.

        Args:
            staging: Staging area holding ``meta.json`` and the artifacts.
            build_id: Final build id; must match the staged record.

        Returns:
            The committed BuildRecord.

        Raises:
            IncompleteCommit: If an earlier commit was never recovered.
            InputError: If the staged record is missing or inconsistent.
            ImageBuildError: If the build id already exists.
        """
        validate_build_id(build_id)
        if self.marker_path.exists():
            raise IncompleteCommit(
                "An interrupted commit must be recovered before committing",
                build_id=build_id,
            )

        meta_path = staging.path / META_FILE
        try:
            staged = BuildRecord.from_meta(_read_json(meta_path))
        except (OSError, ValueError) as e:
            raise InputError(f"Staging area has no valid {META_FILE}: {e}") from e
        if staged.build_id != build_id:
            raise InputError(
                f"Staged record is {staged.build_id}, refusing to commit as {build_id}"
            )

        final_dir = self.build_dir(build_id)
        ids = self.read_index()
        if build_id in ids or final_dir.exists():
            raise ImageBuildError(f"Build {build_id} already exists", code="build_exists")

        # (a) write-ahead marker
        write_json_atomic(
            self.marker_path,
            {
                "build_id": build_id,
                "staging": str(staging.path),
                "previous_latest": self._read_latest_target(),
                "started_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        # (b) promote
        os.rename(staging.path, final_dir)
        staging.path = final_dir
        # (c) repoint latest
        self._point_latest(build_id)
        # (d) index
        self._write_index([build_id, *ids])
        # (e) done
        self.marker_path.unlink()

        logger.info("Committed build %s", build_id)
        return staged

    def pending_commit(self) -> dict[str, Any] | None:
        """Contents of the commit marker, or None if no commit is in flight.

        Raises:
            IncompleteCommit: If the marker exists but cannot be read.
        """
        if not self.marker_path.exists():
            return None
        try:
            data = _read_json(self.marker_path)
        except (OSError, ValueError) as e:
            raise IncompleteCommit(
                f"Commit marker {self.marker_path} is unreadable; manual "
                f"intervention required: {e}"
            ) from e
        if not isinstance(data, dict) or not isinstance(data.get("build_id"), str):
            raise IncompleteCommit(
                f"Commit marker {self.marker_path} is malformed; manual "
                "intervention required"
            )
        return data

    def recover(self, auto: bool = True) -> RecoveryOutcome:
        """Redo or undo a commit interrupted between marker write and clear.

        The build is trusted if its directory exists under its final name and
        the index lists it; ``latest`` is then repointed to it if needed.
        Otherwise the orphaned directory is removed, ``latest`` is restored to
        the index head and the build must be retried.

        Args:
            auto: Recover automatically; if False an interrupted commit raises.

        Returns:
            RecoveryOutcome describing what was done.

        Raises:
            IncompleteCommit: If a commit was interrupted and ``auto`` is
                False, or the marker is unreadable.
        """
        marker = self.pending_commit()
        if marker is None:
            return RecoveryOutcome.CLEAN

        build_id = marker["build_id"]
        if not auto:
            raise IncompleteCommit(
                f"Commit of build {build_id} was interrupted", build_id=build_id
            )

        final_dir = self.build_dir(build_id)
        ids = self.read_index()

        if final_dir.is_dir() and build_id in ids:
            if self._read_latest_target() != build_id:
                self._point_latest(build_id)
            self.marker_path.unlink()
            logger.warning("Recovered interrupted commit of build %s", build_id)
            return RecoveryOutcome.COMMITTED

        if build_id in ids:
            ids.remove(build_id)
            self._write_index(ids)
        if final_dir.exists():
            shutil.rmtree(final_dir)

        target = self._read_latest_target()
        if target == build_id or (target and not self.build_dir(target).is_dir()):
            if ids:
                self._point_latest(ids[0])
            else:
                self.latest_link.unlink()

        self.marker_path.unlink()
        logger.warning("Discarded interrupted commit of build %s", build_id)
        return RecoveryOutcome.DISCARDED

    # Delete

    def delete(self, build_id: str) -> None:
        """Remove a committed build.

        The index entry goes first so a reader never sees an indexed build
        whose directory is half removed.

        Raises:
            NotFound: If the build is neither indexed nor on disk.
            ProtectedBuildError: If ``latest`` points to the build.
        """
        validate_build_id(build_id)
        ids = self.read_index()
        final_dir = self.build_dir(build_id)
        if build_id not in ids and not final_dir.exists():
            raise NotFound(build_id)
        if self._read_latest_target() == build_id:
            raise ProtectedBuildError(build_id)

        if build_id in ids:
            self._write_index([i for i in ids if i != build_id])
        if final_dir.exists():
            shutil.rmtree(final_dir)
        logger.info("Deleted build %s", build_id)


__all__ = [
    "COMMITMETA_FILE",
    "COMMIT_MARKER",
    "INDEX_FILE",
    "LATEST_LINK",
    "META_FILE",
    "HistoryStore",
    "StagingHandle",
    "StagingState",
    "history_lock",
    "validate_build_id",
    "write_json_atomic",
]
