"""External tool collaborators.

Each collaborator wraps one external tool behind a small protocol so the
coordinator can be driven by fakes in tests:

- Composer: composes the package tree (cache-only) and reports its commit
- ImageGenerator: writes a raw disk image for one variant
- ImageCleaner: strips installer artifacts from an image in place

The command-based implementations pass everything on the command line and
exchange metadata through JSON files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from imagebuild.builds.history import write_json_atomic
from imagebuild.builds.models import ComposeResult
from imagebuild.builds.runner import CommandExecutionError, CommandResult, run_command
from imagebuild.errors import CollaboratorFailure
from imagebuild.types import BuildStage

logger = logging.getLogger(__name__)

# Reference handed to the composer when the image definition pins no ref
PROVISIONAL_REF = "imagebuild/provisional"

EXTRA_METADATA_FILE = "extra-metadata.json"
COMPOSE_OUTPUT_FILE = "compose.json"
CHANGED_MARKER_FILE = "changed"
COMPOSE_LOG_FILE = "compose.log"


class Composer(Protocol):
    def compose(
        self,
        cache_only: bool,
        extra_metadata: dict[str, Any],
        output_dir: Path,
        ref: str | None = None,
    ) -> ComposeResult: ...


class ImageGenerator(Protocol):
    def generate(
        self,
        tree_ref: str,
        output_path: Path,
        variant: str,
        log_path: Path,
        size_gb: int | None = None,
    ) -> None: ...


class ImageCleaner(Protocol):
    def clean(self, image_path: Path, log_path: Path) -> None: ...


def _execute(
    cmd: list[str],
    log_path: Path,
    stage: BuildStage,
    timeout: int | None,
    artifact_kind: str | None = None,
) -> CommandResult:
    try:
        result = run_command(cmd, log_path, timeout=timeout)
    except CommandExecutionError as e:
        raise CollaboratorFailure(
            str(e),
            stage=stage.value,
            artifact_kind=artifact_kind,
            exit_code=e.exit_code,
            log_path=log_path,
            code=e.code,
        ) from e
    if not result.success:
        raise CollaboratorFailure(
            result.error_message or f"{cmd[0]} failed",
            stage=stage.value,
            artifact_kind=artifact_kind,
            exit_code=result.exit_code,
            log_path=log_path,
        )
    return result


class CommandComposer:
    """Run the compose tool.

    Invoked as::

        <command> [--cache-only] --metadata-json <file> --output <compose.json>
                  --changed-marker <file> --ref <ref>

    The tool writes its metadata document (which must contain
    ``tree-commit``) to ``--output`` and creates the changed marker when the
    tree differs from its previous compose.
    """

    def __init__(self, command: list[str], timeout: int | None = None) -> None:
        if not command:
            raise ValueError("compose command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def compose(
        self,
        cache_only: bool,
        extra_metadata: dict[str, Any],
        output_dir: Path,
        ref: str | None = None,
    ) -> ComposeResult:
        output_dir.mkdir(parents=True, exist_ok=True)
        metadata_path = output_dir / EXTRA_METADATA_FILE
        output_path = output_dir / COMPOSE_OUTPUT_FILE
        marker_path = output_dir / CHANGED_MARKER_FILE
        log_path = output_dir / COMPOSE_LOG_FILE

        write_json_atomic(metadata_path, extra_metadata)
        for stale in (output_path, marker_path):
            stale.unlink(missing_ok=True)

        cmd = list(self.command)
        if cache_only:
            cmd.append("--cache-only")
        cmd += [
            "--metadata-json",
            str(metadata_path),
            "--output",
            str(output_path),
            "--changed-marker",
            str(marker_path),
            "--ref",
            ref or PROVISIONAL_REF,
        ]

        _execute(cmd, log_path, BuildStage.COMPOSE_OR_SKIP, self.timeout)

        try:
            with output_path.open(encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            raise CollaboratorFailure(
                f"Compose produced no readable metadata at {output_path}: {e}",
                stage=BuildStage.COMPOSE_OR_SKIP.value,
                log_path=log_path,
            ) from e

        tree_commit = document.get("tree-commit") if isinstance(document, dict) else None
        if not isinstance(tree_commit, str) or not tree_commit:
            raise CollaboratorFailure(
                f"Compose metadata has no 'tree-commit': {output_path}",
                stage=BuildStage.COMPOSE_OR_SKIP.value,
                log_path=log_path,
            )

        changed = marker_path.exists()
        logger.info(
            "Composed tree %s (%s)", tree_commit, "changed" if changed else "unchanged"
        )
        return ComposeResult(
            tree_commit=tree_commit,
            metadata=document,
            changed=changed,
            provisional_ref=ref is None,
            log_path=log_path,
        )


class CommandImageGenerator:
    """Run the disk image tool.

    Invoked as ``<command> --tree <ref> --variant <kind> --output <path>``,
    with ``--size-gb <n>`` appended when the definition sets a disk size.
    """

    def __init__(self, command: list[str], timeout: int | None = None) -> None:
        if not command:
            raise ValueError("image command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def generate(
        self,
        tree_ref: str,
        output_path: Path,
        variant: str,
        log_path: Path,
        size_gb: int | None = None,
    ) -> None:
        cmd = [
            *self.command,
            "--tree",
            tree_ref,
            "--variant",
            variant,
            "--output",
            str(output_path),
        ]
        if size_gb is not None:
            cmd.extend(["--size-gb", str(size_gb)])
        _execute(cmd, log_path, BuildStage.IMAGE_BUILD, self.timeout, artifact_kind=variant)
        if not output_path.is_file():
            raise CollaboratorFailure(
                f"Image tool reported success but wrote no file: {output_path}",
                stage=BuildStage.IMAGE_BUILD.value,
                artifact_kind=variant,
                log_path=log_path,
            )


class CommandImageCleaner:
    """Run the cleanup tool as ``<command> <image path>``."""

    def __init__(self, command: list[str], timeout: int | None = None) -> None:
        if not command:
            raise ValueError("cleanup command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def clean(self, image_path: Path, log_path: Path) -> None:
        _execute(
            [*self.command, str(image_path)],
            log_path,
            BuildStage.IMAGE_BUILD,
            self.timeout,
            artifact_kind=image_path.name,
        )


__all__ = [
    "PROVISIONAL_REF",
    "CommandComposer",
    "CommandImageCleaner",
    "CommandImageGenerator",
    "Composer",
    "ImageCleaner",
    "ImageGenerator",
]
