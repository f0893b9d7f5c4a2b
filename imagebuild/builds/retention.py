"""Retention policy for the build history.

Pruning walks the index oldest-first (index order is creation order; build
ids are not lexically ordered across generation bumps) and removes builds
beyond the retention count or older than the maximum age. The build that
``latest`` points to is never removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from imagebuild.types import PruneResult

if TYPE_CHECKING:
    from imagebuild.builds.history import HistoryStore
    from imagebuild.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class RetentionPolicy:
    """How many builds to keep.

    Attributes:
        keep: Number of newest builds to keep.
        max_age: Remove builds older than this (disabled if None).
    """

    keep: int = 3
    max_age: timedelta | None = None

    def __post_init__(self) -> None:
        if self.keep < 1:
            raise ValueError("keep must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetentionPolicy:
        max_age = (
            timedelta(days=settings.retention_max_age_days)
            if settings.retention_max_age_days
            else None
        )
        return cls(keep=settings.retention_keep, max_age=max_age)

    def select(
        self,
        store: HistoryStore,
        now: datetime | None = None,
    ) -> tuple[list[str], list[str]]:
        """Split the history into builds to keep and builds to prune.

        Returns:
            Tuple of (kept ids newest first, pruned ids oldest first).
        """
        ids = store.read_index()
        latest_id = store.latest_id()
        cutoff = None
        if self.max_age is not None:
            cutoff = (now or datetime.now(timezone.utc)) - self.max_age

        kept: list[str] = []
        pruned: list[str] = []
        for position, build_id in enumerate(ids):
            if build_id == latest_id:
                kept.append(build_id)
                continue
            expired = False
            if cutoff is not None:
                record = store.get(build_id)
                if record is not None:
                    created = record.timestamp
                    if created.tzinfo is None:
                        created = created.replace(tzinfo=timezone.utc)
                    expired = created < cutoff
            if position >= self.keep or expired:
                pruned.append(build_id)
            else:
                kept.append(build_id)

        pruned.reverse()
        return kept, pruned

    def prune(
        self,
        store: HistoryStore,
        insert_only: bool = False,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PruneResult:
        """Apply the policy after a commit.

        The commit itself inserts the new build at the head of the index;
        with ``insert_only`` nothing else happens, leaving pruning to a later
        explicit decision.

        Args:
            store: History to prune.
            insert_only: Do not remove anything.
            dry_run: Report what would be removed without removing it.
            now: Reference time for age-based pruning.

        Returns:
            PruneResult with pruned ids (oldest first) and kept ids.
        """
        if insert_only:
            logger.info("Skipping prune (insert-only)")
            return PruneResult(kept=store.read_index(), dry_run=dry_run)

        kept, pruned = self.select(store, now=now)
        if dry_run:
            return PruneResult(pruned=pruned, kept=kept, dry_run=True)

        for build_id in pruned:
            logger.info("Pruning build %s", build_id)
            store.delete(build_id)

        return PruneResult(pruned=pruned, kept=kept)


__all__ = ["RetentionPolicy"]
