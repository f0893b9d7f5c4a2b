"""Run journal ORM models.

A RunRecord captures one coordinator invocation, including skips and
failures that never reach the build history.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from imagebuild.db import Base
from imagebuild.types import BuildStage, RunStatus


class RunRecord(Base):
    """ORM model for coordinator runs.

    Attributes:
        id: Primary key.
        status: running, built, skipped or failed.
        stage: Last stage the run entered.
        failed_stage: Stage during which the run failed.
        build_id: Build produced (or found unchanged, on skip).
        tree_commit: Tree the run worked from.
        image_input_checksum: Inputs the run decided on.
        history_root: History directory the run targeted.
        forced: Whether the run was forced.
        requested_at: When the run started.
        finished_at: When the run finished.
        error_type: Error code if the run failed.
        error_message: Error message if the run failed.
    """

    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.RUNNING.value, index=True
    )
    stage: Mapped[str] = mapped_column(
        String(30), nullable=False, default=BuildStage.INIT.value
    )
    failed_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)

    build_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    tree_commit: Mapped[str | None] = mapped_column(String(128), nullable=True)
    image_input_checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    history_root: Mapped[str] = mapped_column(String(500), nullable=False)
    forced: Mapped[bool] = mapped_column(nullable=False, default=False)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_runs_root_status", "history_root", "status"),)

    def __repr__(self) -> str:
        """Return string representation of RunRecord."""
        return (
            f"<RunRecord(id={self.id}, status='{self.status}', "
            f"stage='{self.stage}', build_id='{self.build_id}')>"
        )

    def mark_finished(self, status: RunStatus) -> None:
        """Mark this run as finished with the given status."""
        self.status = status.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Error code.
            message: Error message details.
        """
        self.status = RunStatus.FAILED.value
        self.failed_stage = self.stage
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message


__all__ = ["RunRecord"]
