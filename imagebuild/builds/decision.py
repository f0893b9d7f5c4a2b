"""Incremental build decision.

Given the previous build and the current inputs, decides whether to skip,
regenerate images for an unchanged tree, or build from a new tree, and
computes the next build id:

1. ``force``: always build.
2. Same image input checksum as the previous build: skip.
3. Same tree commit as the previous build: bump the generation,
   ``build_id = <version>-<generation>``.
4. Otherwise: generation 0, ``build_id = <version>``.

A skip wins even if the previous build lacks an artifact for a requested
variant.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from imagebuild.builds.checksum import input_checksum
from imagebuild.builds.compose_cache import CachedCompose
from imagebuild.builds.models import BuildRecord, ComposeResult
from imagebuild.errors import NoResumableState
from imagebuild.types import DecisionAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """Result of the incremental decision.

    Attributes:
        action: Skip, image-only rebuild, or full build.
        image_input_checksum: Checksum of the current inputs.
        build_id: Id of the build to produce (the previous id on skip).
        generation: Generation of that build.
        reason: Human-readable explanation.
    """

    action: DecisionAction
    image_input_checksum: str
    build_id: str | None = None
    generation: int = 0
    reason: str = ""

    @property
    def should_build(self) -> bool:
        return self.action != DecisionAction.SKIP


def format_build_id(version: str, generation: int) -> str:
    """Render a build id from a base version and a generation."""
    if generation == 0:
        return version
    return f"{version}-{generation}"


def _unique_generation(version: str, generation: int, existing: set[str]) -> int:
    while format_build_id(version, generation) in existing:
        generation += 1
    return generation


def decide(
    previous: BuildRecord | None,
    tree_commit: str,
    config_checksum: str,
    version: str,
    force: bool = False,
    existing_ids: Iterable[str] = (),
) -> Decision:
    """Decide what this run has to do.

    Args:
        previous: Most recently committed build, if any.
        tree_commit: Tree commit produced (or resumed) by the compose step.
        config_checksum: Checksum of the image definition.
        version: Base version embedded in the tree metadata.
        force: Build even if the inputs did not change.
        existing_ids: Build ids already in the history.

    Returns:
        Decision for this run.
    """
    checksum = input_checksum(tree_commit, config_checksum)

    if not force and previous is not None and previous.image_input_checksum == checksum:
        return Decision(
            action=DecisionAction.SKIP,
            image_input_checksum=checksum,
            build_id=previous.build_id,
            generation=previous.generation,
            reason=f"No changes in image inputs since {previous.build_id}",
        )

    if previous is not None and previous.tree_commit == tree_commit:
        action = DecisionAction.REBUILD_IMAGE
        generation = previous.generation + 1
        reason = (
            "Forced image rebuild of unchanged tree"
            if force
            else "Image configuration changed, tree unchanged"
        )
    else:
        action = DecisionAction.FULL_BUILD
        generation = 0
        reason = "New tree" if previous is not None else "First build"

    unique = _unique_generation(version, generation, set(existing_ids))
    if unique != generation:
        logger.warning(
            "Build id %s already exists; using generation %d",
            format_build_id(version, generation),
            unique,
        )

    return Decision(
        action=action,
        image_input_checksum=checksum,
        build_id=format_build_id(version, unique),
        generation=unique,
        reason=reason,
    )


def resolve_resume_source(
    cached: CachedCompose | None,
    previous: BuildRecord | None,
    previous_commitmeta: dict[str, object] | None = None,
) -> ComposeResult:
    """Find the tree to build images from without recomposing.

    The previous-compose cache wins; otherwise the tree and its metadata are
    sourced from the previous build.

    Raises:
        NoResumableState: If there is neither a cached compose nor a
            previous build.
    """
    if cached is not None:
        logger.info("Resuming from cached compose of %s", cached.result.tree_commit)
        return ComposeResult(
            tree_commit=cached.result.tree_commit,
            metadata=dict(cached.result.metadata),
            changed=False,
            provisional_ref=cached.result.provisional_ref,
        )

    if previous is not None:
        logger.info("Resuming from tree of previous build %s", previous.build_id)
        metadata: dict[str, object] = dict(previous_commitmeta or {})
        metadata.setdefault("version", previous.version)
        metadata["tree-commit"] = previous.tree_commit
        if previous.ref:
            metadata.setdefault("ref", previous.ref)
        return ComposeResult(
            tree_commit=previous.tree_commit,
            metadata=metadata,
            changed=False,
            provisional_ref=previous.ref is None,
        )

    raise NoResumableState(
        "No cached compose output and no previous build to resume from; "
        "run a full build instead"
    )


__all__ = [
    "Decision",
    "decide",
    "format_build_id",
    "resolve_resume_source",
]
