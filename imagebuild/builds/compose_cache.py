"""Previous-compose cache.

Keeps the output of the most recent successful compose, keyed by tree
commit, so an image build that failed after composing can be resumed
without recomposing. Saving an entry for a new tree commit supersedes
(deletes) every other entry.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from imagebuild.builds.history import validate_build_id, write_json_atomic
from imagebuild.builds.models import ComposeResult
from imagebuild.errors import InputError

logger = logging.getLogger(__name__)

COMPOSE_CACHE_DIR = "compose"
COMPOSE_FILE = "compose.json"


@dataclass
class CachedCompose:
    """A cached compose output and when it was stored."""

    result: ComposeResult
    cached_at: datetime


class ComposeCache:
    """On-disk cache of compose outputs under ``<cache_dir>/compose``."""

    def __init__(self, cache_dir: Path) -> None:
        self.root = Path(cache_dir) / COMPOSE_CACHE_DIR

    def entry_dir(self, tree_commit: str) -> Path:
        try:
            validate_build_id(tree_commit)
        except InputError:
            raise InputError(
                f"Tree commit is not a safe cache key: {tree_commit!r}",
                code="invalid_tree_commit",
            ) from None
        return self.root / tree_commit

    def save(self, result: ComposeResult) -> Path:
        """Store a compose output and drop entries for other trees.

        Args:
            result: Compose output to store.

        Returns:
            Path of the written cache document.
        """
        entry = self.entry_dir(result.tree_commit)
        entry.mkdir(parents=True, exist_ok=True)
        path = entry / COMPOSE_FILE
        write_json_atomic(
            path,
            {
                "tree-commit": result.tree_commit,
                "metadata": result.metadata,
                "changed": result.changed,
                "provisional-ref": result.provisional_ref,
                "cached-at": datetime.now(timezone.utc).isoformat(),
            },
        )

        for other in self.root.iterdir():
            if other.is_dir() and other.name != result.tree_commit:
                logger.info("Superseding cached compose %s", other.name)
                shutil.rmtree(other)

        logger.debug("Cached compose output for %s", result.tree_commit)
        return path

    def load(self, tree_commit: str) -> CachedCompose | None:
        """Load the cached compose output for a tree commit, if present."""
        path = self.entry_dir(tree_commit) / COMPOSE_FILE
        if not path.exists():
            return None
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
            return CachedCompose(
                result=ComposeResult(
                    tree_commit=data["tree-commit"],
                    metadata=data.get("metadata") or {},
                    changed=bool(data.get("changed", False)),
                    provisional_ref=bool(data.get("provisional-ref", False)),
                ),
                cached_at=datetime.fromisoformat(data["cached-at"]),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable compose cache entry %s: %s", path, e)
            return None

    def latest(self) -> CachedCompose | None:
        """The most recently cached compose output, if any."""
        if not self.root.is_dir():
            return None
        entries = [
            cached
            for p in self.root.iterdir()
            if p.is_dir() and (cached := self.load(p.name)) is not None
        ]
        if not entries:
            return None
        return max(entries, key=lambda c: c.cached_at)

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)


__all__ = ["COMPOSE_FILE", "CachedCompose", "ComposeCache"]
