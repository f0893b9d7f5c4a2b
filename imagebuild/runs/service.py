"""Run journal service.

This module records coordinator invocations:
- start_run(): journal a run before the coordinator starts
- record_stage(): track the stage the run reached
- finish_run() / fail_run(): record the outcome
- list_runs(): query the journal
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from imagebuild.errors import CollaboratorFailure, ImageBuildError
from imagebuild.runs.models import RunRecord
from imagebuild.types import BuildStage, RunStatus

if TYPE_CHECKING:
    from imagebuild.builds.coordinator import RunResult

logger = logging.getLogger(__name__)


def start_run(session: Session, history_root: Path, forced: bool = False) -> RunRecord:
    """Create a RunRecord in running state.

    Args:
        session: Database session.
        history_root: History directory the run targets.
        forced: Whether the run was forced.

    Returns:
        Created RunRecord.
    """
    run = RunRecord(
        history_root=str(history_root),
        forced=forced,
        status=RunStatus.RUNNING.value,
        stage=BuildStage.INIT.value,
    )
    session.add(run)
    session.flush()
    logger.debug("Journalled run %d", run.id)
    return run


def record_stage(run: RunRecord, stage: BuildStage) -> None:
    """Track the stage a run entered.

    ABORTED is not recorded as a stage so the journal keeps the stage the
    run failed in.
    """
    if stage != BuildStage.ABORTED:
        run.stage = stage.value


def finish_run(session: Session, run: RunRecord, result: RunResult) -> RunRecord:
    """Record a successful (built or skipped) run."""
    run.build_id = result.build_id
    if result.decision is not None:
        run.image_input_checksum = result.decision.image_input_checksum
    if result.record is not None:
        run.tree_commit = result.record.tree_commit
    run.stage = result.stage.value
    run.mark_finished(result.status)
    session.flush()
    return run


def fail_run(session: Session, run: RunRecord, error: Exception) -> RunRecord:
    """Record a failed run."""
    code = error.code if isinstance(error, ImageBuildError) else type(error).__name__
    message = str(error)
    if isinstance(error, CollaboratorFailure) and error.artifact_kind:
        message = f"[{error.stage}/{error.artifact_kind}] {message}"
    run.mark_failed(error_type=code, message=message)
    session.flush()
    return run


def list_runs(
    session: Session,
    history_root: Path | None = None,
    status: RunStatus | None = None,
    limit: int = 50,
) -> list[RunRecord]:
    """List journalled runs, newest first.

    Args:
        session: Database session.
        history_root: Filter by history directory.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of RunRecord instances.
    """
    stmt = select(RunRecord)

    if history_root is not None:
        stmt = stmt.where(RunRecord.history_root == str(history_root))
    if status is not None:
        stmt = stmt.where(RunRecord.status == status.value)

    stmt = stmt.order_by(RunRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = ["fail_run", "finish_run", "list_runs", "record_stage", "start_run"]
