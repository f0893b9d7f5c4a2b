"""Build metadata merge.

A build record is assembled from five sources, merged in this order with
later sources overriding earlier keys:

1. compose metadata (the tree's own metadata document)
2. run metadata (build id, checksums, generation, timestamp, image settings)
3. artifact listing (``images``)
4. provenance (``source``)
5. externally supplied extra metadata

Extra metadata may add keys but may not change the identity of the build.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from imagebuild.builds.models import BuildRecord, ComposeResult, SourceProvenance
from imagebuild.errors import InputError
from imagebuild.types import ArtifactInfo

logger = logging.getLogger(__name__)

IDENTITY_KEYS = (
    "buildid",
    "tree-commit",
    "image-input-checksum",
    "image-config-checksum",
    "image-genver",
)


@dataclass
class RunMetadata:
    """Metadata this run contributes to the build record."""

    build_id: str
    version: str
    tree_commit: str
    image_input_checksum: str
    config_checksum: str
    generation: int
    timestamp: datetime
    name: str | None = None
    ref: str | None = None
    size_gb: int | None = None
    extra_kargs: list[str] = field(default_factory=list)

    def to_layer(self) -> dict[str, Any]:
        layer: dict[str, Any] = {
            "buildid": self.build_id,
            "version": self.version,
            "tree-commit": self.tree_commit,
            "image-input-checksum": self.image_input_checksum,
            "image-config-checksum": self.config_checksum,
            "image-genver": self.generation,
            "timestamp": self.timestamp,
        }
        if self.name is not None:
            layer["name"] = self.name
        if self.ref is not None:
            layer["ref"] = self.ref
        if self.size_gb is not None:
            layer["image-size-gb"] = self.size_gb
        if self.extra_kargs:
            layer["extra-kargs"] = list(self.extra_kargs)
        return layer


def artifacts_layer(artifacts: Mapping[str, ArtifactInfo]) -> dict[str, Any]:
    """Render the artifact listing layer."""
    return {
        "images": {
            kind: {
                "path": info.relative_path,
                "sha256": info.sha256,
                "size": info.size_bytes,
            }
            for kind, info in sorted(artifacts.items())
        }
    }


def provenance_layer(provenance: SourceProvenance) -> dict[str, Any]:
    """Render the provenance layer."""
    return {"source": provenance.model_dump(by_alias=True, exclude_none=True)}


def _check_identity(run_layer: dict[str, Any], extra: Mapping[str, Any]) -> None:
    for key in IDENTITY_KEYS:
        if key in extra and extra[key] != run_layer.get(key):
            raise InputError(
                f"Extra metadata may not override '{key}'",
                code="metadata_conflict",
            )


def merge_metadata(
    compose: ComposeResult,
    run: RunMetadata,
    artifacts: Mapping[str, ArtifactInfo],
    provenance: SourceProvenance,
    extra: Mapping[str, Any] | None = None,
) -> BuildRecord:
    """Merge all metadata sources into one build record.

    Args:
        compose: Compose output; its metadata is the lowest-precedence layer.
        run: This run's own metadata.
        artifacts: Produced artifacts by kind.
        provenance: Source provenance.
        extra: Externally supplied metadata (highest precedence).

    Returns:
        The merged BuildRecord.

    Raises:
        InputError: If extra metadata conflicts with the build identity or
            the merged document is not a valid record.
    """
    extra = extra or {}
    run_layer = run.to_layer()
    _check_identity(run_layer, extra)

    layers: list[tuple[str, Mapping[str, Any]]] = [
        ("compose", compose.metadata),
        ("run", run_layer),
        ("artifacts", artifacts_layer(artifacts)),
        ("provenance", provenance_layer(provenance)),
        ("extra", extra),
    ]

    merged: dict[str, Any] = {}
    for name, layer in layers:
        overridden = sorted(set(merged) & set(layer))
        if overridden:
            logger.debug("Metadata layer %s overrides %s", name, ", ".join(overridden))
        merged.update(layer)

    if compose.provisional_ref:
        merged.pop("ref", None)

    try:
        return BuildRecord.model_validate(merged)
    except ValidationError as e:
        raise InputError(
            f"Merged build metadata is invalid: {e}", code="metadata_invalid"
        ) from e


__all__ = [
    "IDENTITY_KEYS",
    "RunMetadata",
    "artifacts_layer",
    "merge_metadata",
    "provenance_layer",
]
