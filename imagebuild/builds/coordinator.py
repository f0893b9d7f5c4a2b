"""Build transaction coordinator.

This module drives one build attempt end to end:

    INIT -> COMPOSE_OR_SKIP -> {SKIPPED | COMPOSED} -> IMAGE_BUILD
         -> METADATA_MERGE -> COMMIT -> PRUNE -> DONE

Any failure moves the run to ABORTED. Failures before COMMIT leave the
history untouched and the staging area in place, so the next run resumes
it: images already present in the staging area are not regenerated.

The history lock is held for the whole run so two coordinators never make
divergent decisions against the same history.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from imagebuild import __version__
from imagebuild.builds.checksum import file_checksum
from imagebuild.builds.collaborators import (
    CommandComposer,
    CommandImageCleaner,
    CommandImageGenerator,
    Composer,
    ImageCleaner,
    ImageGenerator,
)
from imagebuild.builds.compose_cache import ComposeCache
from imagebuild.builds.decision import Decision, decide, resolve_resume_source
from imagebuild.builds.history import HistoryStore, StagingHandle, StagingState
from imagebuild.builds.merge import RunMetadata, merge_metadata
from imagebuild.builds.models import ArtifactEntry, BuildRecord, ComposeResult, SourceProvenance
from imagebuild.builds.retention import RetentionPolicy
from imagebuild.errors import CollaboratorFailure
from imagebuild.imagedef import (
    LoadedDefinition,
    config_provenance,
    load_image_definition,
    select_variants,
)
from imagebuild.types import ArtifactInfo, BuildStage, RecoveryOutcome, RunStatus

if TYPE_CHECKING:
    from imagebuild.config import Settings

logger = logging.getLogger(__name__)

COMPOSE_WORK_DIR = "compose-work"
LOGS_DIR = "logs"


@dataclass
class BuildRequest:
    """What the caller asked for.

    Attributes:
        force: Build even if the inputs did not change.
        force_image: Skip the compose step and build images from the cached
            (or previous) tree; implies ``force``.
        skip_prune: Insert the new build without pruning old ones.
        variants: Subset of the declared variants to build.
        extra_metadata: Externally supplied metadata, merged last.
    """

    force: bool = False
    force_image: bool = False
    skip_prune: bool = False
    variants: list[str] | None = None
    extra_metadata: dict[str, Any] | None = None


@dataclass
class BuildContext:
    """State threaded through the stages of one run."""

    request: BuildRequest
    stage: BuildStage = BuildStage.INIT
    recovery: RecoveryOutcome = RecoveryOutcome.CLEAN
    definition: LoadedDefinition | None = None
    variants: list[str] = field(default_factory=list)
    previous: BuildRecord | None = None
    compose: ComposeResult | None = None
    decision: Decision | None = None
    staging: StagingHandle | None = None
    artifacts: dict[str, ArtifactInfo] = field(default_factory=dict)
    record: BuildRecord | None = None
    pruned: list[str] = field(default_factory=list)


@dataclass
class RunResult:
    """Outcome of a successful run (built or skipped)."""

    status: RunStatus
    stage: BuildStage
    decision: Decision | None
    record: BuildRecord | None = None
    pruned: list[str] = field(default_factory=list)
    recovery: RecoveryOutcome = RecoveryOutcome.CLEAN

    @property
    def skipped(self) -> bool:
        return self.status == RunStatus.SKIPPED

    @property
    def build_id(self) -> str | None:
        if self.record is not None:
            return self.record.build_id
        return self.decision.build_id if self.decision else None


class BuildCoordinator:
    """Runs build transactions against one history.

    Args:
        store: Build history.
        compose_cache: Previous-compose cache.
        composer: Compose collaborator.
        image_generator: Image generation collaborator.
        definition_path: Image definition file.
        cleaner: Optional cleanup collaborator.
        retention: Retention policy applied after each commit.
        max_workers: Image variants generated in parallel.
        lock_blocking: Wait for the history lock instead of failing fast.
        auto_recover: Recover interrupted commits automatically.
        on_stage: Called with each stage as the run enters it.
    """

    def __init__(
        self,
        store: HistoryStore,
        compose_cache: ComposeCache,
        composer: Composer,
        image_generator: ImageGenerator,
        definition_path: Path,
        cleaner: ImageCleaner | None = None,
        retention: RetentionPolicy | None = None,
        max_workers: int = 1,
        lock_blocking: bool = False,
        auto_recover: bool = True,
        on_stage: Callable[[BuildStage], None] | None = None,
    ) -> None:
        self.store = store
        self.compose_cache = compose_cache
        self.composer = composer
        self.image_generator = image_generator
        self.definition_path = definition_path
        self.cleaner = cleaner
        self.retention = retention or RetentionPolicy()
        self.max_workers = max(1, max_workers)
        self.lock_blocking = lock_blocking
        self.auto_recover = auto_recover
        self.on_stage = on_stage

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        on_stage: Callable[[BuildStage], None] | None = None,
    ) -> BuildCoordinator:
        """Create a coordinator wired to the command-based collaborators."""
        cleaner = (
            CommandImageCleaner(settings.cleanup_command, timeout=settings.image_timeout)
            if settings.cleanup_command
            else None
        )
        return cls(
            store=HistoryStore(settings.builds_dir),
            compose_cache=ComposeCache(settings.cache_dir),
            composer=CommandComposer(
                settings.compose_command, timeout=settings.compose_timeout
            ),
            image_generator=CommandImageGenerator(
                settings.image_command, timeout=settings.image_timeout
            ),
            definition_path=settings.image_definition_path,
            cleaner=cleaner,
            retention=RetentionPolicy.from_settings(settings),
            max_workers=settings.max_concurrent_images,
            lock_blocking=settings.lock_blocking,
            auto_recover=settings.auto_recover,
            on_stage=on_stage,
        )

    def _enter(self, ctx: BuildContext, stage: BuildStage) -> None:
        logger.debug("Stage %s -> %s", ctx.stage.value, stage.value)
        ctx.stage = stage
        if self.on_stage is not None:
            self.on_stage(stage)

    def run(self, request: BuildRequest | None = None) -> RunResult:
        """Run one build transaction.

        Returns:
            RunResult; ``status`` is SKIPPED when the inputs were unchanged.

        Raises:
            ImageBuildError: On any failure; the run is ABORTED.
        """
        ctx = BuildContext(request=request or BuildRequest())

        with self.store.lock(blocking=self.lock_blocking):
            try:
                self._init(ctx)
                self._compose_or_skip(ctx)
                if ctx.stage == BuildStage.SKIPPED:
                    self._enter(ctx, BuildStage.DONE)
                    return RunResult(
                        status=RunStatus.SKIPPED,
                        stage=ctx.stage,
                        decision=ctx.decision,
                        record=ctx.previous,
                        recovery=ctx.recovery,
                    )
                self._image_build(ctx)
                self._merge(ctx)
                self._commit(ctx)
                self._prune(ctx)
                self._enter(ctx, BuildStage.DONE)
            except Exception:
                failed_stage = ctx.stage
                self._enter(ctx, BuildStage.ABORTED)
                logger.error("Build aborted during %s", failed_stage.value)
                raise

        return RunResult(
            status=RunStatus.BUILT,
            stage=ctx.stage,
            decision=ctx.decision,
            record=ctx.record,
            pruned=ctx.pruned,
            recovery=ctx.recovery,
        )

    # Stages

    def _init(self, ctx: BuildContext) -> None:
        self._enter(ctx, BuildStage.INIT)
        ctx.recovery = self.store.recover(auto=self.auto_recover)
        ctx.previous = self.store.latest()
        ctx.definition = load_image_definition(self.definition_path)
        ctx.variants = select_variants(ctx.definition.definition, ctx.request.variants)
        logger.info(
            "Previous build: %s; config checksum %s",
            ctx.previous.build_id if ctx.previous else "none",
            ctx.definition.checksum[:16],
        )

    def _compose_or_skip(self, ctx: BuildContext) -> None:
        self._enter(ctx, BuildStage.COMPOSE_OR_SKIP)
        request = ctx.request

        if request.force_image:
            previous_commitmeta = (
                self.store.read_commitmeta(ctx.previous.build_id)
                if ctx.previous is not None
                else None
            )
            ctx.compose = resolve_resume_source(
                self.compose_cache.latest(), ctx.previous, previous_commitmeta
            )
        else:
            ctx.compose = self.composer.compose(
                cache_only=True,
                extra_metadata=dict(request.extra_metadata or {}),
                output_dir=self.compose_cache.root.parent / COMPOSE_WORK_DIR,
                ref=ctx.definition.definition.ref,
            )

        version = ctx.compose.version
        if version is None:
            raise CollaboratorFailure(
                f"Tree {ctx.compose.tree_commit} carries no version metadata",
                stage=BuildStage.COMPOSE_OR_SKIP.value,
                log_path=ctx.compose.log_path,
                code="missing_version",
            )

        ctx.decision = decide(
            previous=ctx.previous,
            tree_commit=ctx.compose.tree_commit,
            config_checksum=ctx.definition.checksum,
            version=version,
            force=request.force or request.force_image,
            existing_ids=self.store.list_ids(),
        )
        logger.info("%s", ctx.decision.reason)

        if not ctx.decision.should_build:
            self._enter(ctx, BuildStage.SKIPPED)
            return

        if not request.force_image:
            self.compose_cache.save(ctx.compose)
        logger.info(
            "Building %s (generation %d) from tree %s",
            ctx.decision.build_id,
            ctx.decision.generation,
            ctx.compose.tree_commit,
        )
        self._enter(ctx, BuildStage.COMPOSED)

    def _image_build(self, ctx: BuildContext) -> None:
        self._enter(ctx, BuildStage.IMAGE_BUILD)

        staging = self.store.find_staging(ctx.decision.image_input_checksum)
        if staging is not None:
            logger.info("Resuming staging area %s", staging.path)
        else:
            staging = self.store.begin_staging()
        ctx.staging = staging

        state = staging.read_state()
        state.build_id = ctx.decision.build_id
        state.tree_commit = ctx.compose.tree_commit
        state.image_input_checksum = ctx.decision.image_input_checksum
        staging.write_state(state)

        name = ctx.definition.definition.name
        pending: list[str] = []
        for variant in ctx.variants:
            reused = self._reuse_artifact(staging, state, variant, name)
            if reused is not None:
                ctx.artifacts[variant] = reused
            else:
                pending.append(variant)

        failures: dict[str, CollaboratorFailure] = {}
        try:
            if pending:
                workers = min(self.max_workers, len(pending))
                # Leaving the pool waits for every variant, failed or not
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = {
                        variant: pool.submit(
                            self._generate_variant,
                            staging,
                            ctx.compose.tree_commit,
                            variant,
                            name,
                            ctx.definition.definition.size_gb,
                        )
                        for variant in pending
                    }
                for variant, future in futures.items():
                    try:
                        ctx.artifacts[variant] = future.result()
                    except CollaboratorFailure as e:
                        failures[variant] = e
        finally:
            state.artifacts = {
                kind: ArtifactEntry(
                    path=info.relative_path, sha256=info.sha256, size=info.size_bytes
                )
                for kind, info in ctx.artifacts.items()
            }
            staging.write_state(state)

        if failures:
            kinds = ", ".join(sorted(failures))
            only = next(iter(failures.values())) if len(failures) == 1 else None
            raise CollaboratorFailure(
                f"Image generation failed for: {kinds}",
                stage=BuildStage.IMAGE_BUILD.value,
                artifact_kind=only.artifact_kind if only else None,
                exit_code=only.exit_code if only else None,
                log_path=only.log_path if only else None,
                failures=failures,
            )

    @staticmethod
    def _image_filename(name: str, variant: str) -> str:
        return f"{name}-{variant}.img"

    def _reuse_artifact(
        self, staging: StagingHandle, state: StagingState, variant: str, name: str
    ) -> ArtifactInfo | None:
        filename = self._image_filename(name, variant)
        path = staging.path / filename
        if not path.is_file():
            return None
        size = path.stat().st_size
        known = state.artifacts.get(variant)
        if known is not None and known.path == filename and known.size == size:
            sha256 = known.sha256
        else:
            sha256 = file_checksum(path)
        logger.info("Reusing %s image already in staging", variant)
        return ArtifactInfo(kind=variant, relative_path=filename, size_bytes=size, sha256=sha256)

    def _generate_variant(
        self,
        staging: StagingHandle,
        tree_ref: str,
        variant: str,
        name: str,
        size_gb: int | None = None,
    ) -> ArtifactInfo:
        """Generate, clean and promote one image inside the staging area.

        Every failure surfaces as a CollaboratorFailure naming the variant.
        """
        filename = self._image_filename(name, variant)
        final_path = staging.path / filename
        tmp_path = staging.path / f".{filename}.tmp"
        log_path = staging.path / LOGS_DIR / f"image-{variant}.log"

        try:
            tmp_path.unlink(missing_ok=True)
            self.image_generator.generate(
                tree_ref, tmp_path, variant, log_path, size_gb=size_gb
            )
            if self.cleaner is not None:
                self.cleaner.clean(tmp_path, log_path)
            os.replace(tmp_path, final_path)
            return ArtifactInfo(
                kind=variant,
                relative_path=filename,
                size_bytes=final_path.stat().st_size,
                sha256=file_checksum(final_path),
            )
        except CollaboratorFailure as e:
            e.artifact_kind = variant
            raise
        except Exception as e:
            raise CollaboratorFailure(
                f"{variant} image could not be produced: {e}",
                stage=BuildStage.IMAGE_BUILD.value,
                artifact_kind=variant,
                log_path=log_path,
            ) from e

    def _merge(self, ctx: BuildContext) -> None:
        self._enter(ctx, BuildStage.METADATA_MERGE)

        definition = ctx.definition.definition
        provenance_info = config_provenance(self.definition_path.parent)
        provenance = SourceProvenance(
            config_gitrev=provenance_info["gitrev"],
            config_dirty=provenance_info["dirty"],
            code_source=f"imagebuild {__version__} ({Path(__file__).resolve().parents[1]})",
        )
        run = RunMetadata(
            build_id=ctx.decision.build_id,
            version=ctx.compose.version,
            tree_commit=ctx.compose.tree_commit,
            image_input_checksum=ctx.decision.image_input_checksum,
            config_checksum=ctx.definition.checksum,
            generation=ctx.decision.generation,
            timestamp=datetime.now(timezone.utc).replace(microsecond=0),
            name=definition.name,
            ref=definition.ref,
            size_gb=definition.size_gb,
            extra_kargs=definition.extra_kargs,
        )
        ctx.record = merge_metadata(
            compose=ctx.compose,
            run=run,
            artifacts=ctx.artifacts,
            provenance=provenance,
            extra=ctx.request.extra_metadata,
        )
        ctx.staging.write_meta(ctx.record)
        ctx.staging.write_commitmeta(ctx.compose.metadata)

    def _commit(self, ctx: BuildContext) -> None:
        self._enter(ctx, BuildStage.COMMIT)
        ctx.record = self.store.commit(ctx.staging, ctx.decision.build_id)
        self.store.discard_stale_staging(ctx.decision.image_input_checksum)

    def _prune(self, ctx: BuildContext) -> None:
        self._enter(ctx, BuildStage.PRUNE)
        result = self.retention.prune(self.store, insert_only=ctx.request.skip_prune)
        ctx.pruned = result.pruned


__all__ = ["BuildContext", "BuildCoordinator", "BuildRequest", "RunResult"]
