"""Build record models.

This module defines the immutable BuildRecord persisted as ``meta.json``
in each committed build directory, and the ComposeResult produced by the
compose step. Key names in the serialized form (``buildid``,
``tree-commit``, ``images``...) are read by external tooling and must not
change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ArtifactEntry(BaseModel):
    """One image artifact of a build.

    Attributes:
        path: Path relative to the build directory.
        sha256: SHA-256 of the file.
        size: File size in bytes.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str
    sha256: str
    size: int = Field(ge=0)


class SourceProvenance(BaseModel):
    """Where the inputs of a build came from."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    config_gitrev: str | None = Field(default=None, alias="config-gitrev")
    config_dirty: bool | None = Field(default=None, alias="config-dirty")
    code_source: str | None = Field(default=None, alias="code-source")


class BuildRecord(BaseModel):
    """Immutable record of one committed build.

    Unknown keys (carried from the compose metadata or from externally
    supplied metadata) are preserved and round-tripped untouched.

    Attributes:
        build_id: Base version plus optional generation suffix.
        name: Image name from the image definition.
        version: Base version taken from the composed tree's metadata.
        tree_commit: Content-addressed identifier of the composed tree.
        ref: Stable tree reference, absent when it was provisional.
        image_input_checksum: Hash of tree_commit and config_checksum.
        config_checksum: Hash of the raw image definition.
        generation: Image generation for an unchanged tree (starts at 0).
        timestamp: Creation time (UTC).
        size_gb: Disk size the images were generated with, if set.
        extra_kargs: Extra kernel arguments from the image definition.
        artifacts: Artifact kind -> ArtifactEntry.
        source_provenance: Config revision, dirty flag and code source.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    build_id: str = Field(alias="buildid", min_length=1)
    name: str | None = None
    version: str = Field(min_length=1)
    tree_commit: str = Field(alias="tree-commit", min_length=1)
    ref: str | None = None
    image_input_checksum: str = Field(alias="image-input-checksum")
    config_checksum: str = Field(alias="image-config-checksum")
    generation: int = Field(default=0, ge=0, alias="image-genver")
    timestamp: datetime
    size_gb: int | None = Field(default=None, alias="image-size-gb")
    extra_kargs: list[str] = Field(default_factory=list, alias="extra-kargs")
    artifacts: dict[str, ArtifactEntry] = Field(default_factory=dict, alias="images")
    source_provenance: SourceProvenance = Field(
        default_factory=SourceProvenance, alias="source"
    )

    def to_meta(self) -> dict[str, Any]:
        """Serialize to the on-disk ``meta.json`` document."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_meta(cls, data: dict[str, Any]) -> BuildRecord:
        """Parse an on-disk ``meta.json`` document.

        Raises:
            pydantic.ValidationError: If required fields are missing.
        """
        return cls.model_validate(data)

    @property
    def extra_metadata(self) -> dict[str, Any]:
        """Keys outside the fixed schema."""
        return dict(self.model_extra or {})

    def artifact_path(self, build_dir: Path, kind: str) -> Path:
        """Absolute path of an artifact given the build directory."""
        return build_dir / self.artifacts[kind].path


@dataclass
class ComposeResult:
    """Output of the compose step.

    Attributes:
        tree_commit: Content-addressed tree identifier.
        metadata: Full compose metadata document (superset of tree_commit).
        changed: Whether the tree changed from the prior compose.
        provisional_ref: True when no stable ref was assigned.
        log_path: Log of the compose invocation, if one ran.
    """

    tree_commit: str
    metadata: dict[str, Any] = field(default_factory=dict)
    changed: bool = True
    provisional_ref: bool = False
    log_path: Path | None = None

    @property
    def version(self) -> str | None:
        """Base version embedded in the tree metadata."""
        value = self.metadata.get("version")
        return str(value) if value else None


__all__ = [
    "ArtifactEntry",
    "BuildRecord",
    "ComposeResult",
    "SourceProvenance",
]
