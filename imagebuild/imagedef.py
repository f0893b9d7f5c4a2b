"""Image definition loading and validation.

The image definition (``image.yaml`` in the config directory) declares which
image variants a build produces. Its raw bytes also feed the config
checksum, so any edit to the file, even a comment, requests a new image.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from imagebuild.builds.checksum import fingerprint
from imagebuild.errors import InputError

logger = logging.getLogger(__name__)

VARIANT_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_\-]*$")


class ImageDefinition(BaseModel):
    """Schema for the image definition file.

    Attributes:
        name: Image name recorded in each build.
        ref: Stable tree reference; when unset a provisional ref is used.
        variants: Artifact kinds to generate (e.g. 'qemu', 'metal').
        size_gb: Optional disk size passed through to image generation.
        extra_kargs: Extra kernel arguments recorded with the build.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="image", min_length=1)
    ref: str | None = Field(default=None)
    variants: list[str] = Field(min_length=1)
    size_gb: int | None = Field(default=None, ge=1)
    extra_kargs: list[str] = Field(default_factory=list)

    @field_validator("variants")
    @classmethod
    def validate_variants(cls, v: list[str]) -> list[str]:
        """Validate variant names are unique path-safe identifiers."""
        for variant in v:
            if not VARIANT_PATTERN.match(variant):
                raise ValueError(f"invalid variant name '{variant}'")
        if len(set(v)) != len(v):
            raise ValueError("variants must be unique")
        return v


@dataclass
class LoadedDefinition:
    """A validated image definition together with its raw checksum."""

    definition: ImageDefinition
    checksum: str
    path: Path


def load_image_definition(path: Path) -> LoadedDefinition:
    """Load and validate the image definition.

    Args:
        path: Path to the YAML file.

    Returns:
        LoadedDefinition with the parsed schema and the config checksum.

    Raises:
        InputError: If the file is missing, not YAML, or fails validation.
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        raise InputError(
            f"Image definition not found: {path}", code="definition_missing"
        ) from None
    except OSError as e:
        raise InputError(f"Cannot read image definition {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise InputError(
            f"Image definition is not valid YAML: {e}", code="definition_invalid"
        ) from e
    if not isinstance(data, dict):
        raise InputError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}",
            code="definition_invalid",
        )

    try:
        definition = ImageDefinition.model_validate(data)
    except ValidationError as e:
        raise InputError(
            f"Image definition failed validation: {e}", code="definition_invalid"
        ) from e

    return LoadedDefinition(definition=definition, checksum=fingerprint(raw), path=path)


def select_variants(
    definition: ImageDefinition, requested: list[str] | None
) -> list[str]:
    """Resolve the variants to build for this run.

    Raises:
        InputError: If a requested variant is not declared by the definition.
    """
    if not requested:
        return list(definition.variants)
    unknown = [v for v in requested if v not in definition.variants]
    if unknown:
        raise InputError(
            f"Unknown variant(s) {', '.join(unknown)}; "
            f"declared: {', '.join(definition.variants)}",
            code="unknown_variant",
        )
    return [v for v in definition.variants if v in requested]


def _git(config_dir: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=config_dir,
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        logger.debug("git %s failed in %s: %s", " ".join(args), config_dir, e)
        return None
    return result.stdout.strip()


def config_provenance(config_dir: Path) -> dict[str, Any]:
    """Describe the config checkout the build came from.

    Returns:
        Mapping with ``gitrev`` and ``dirty``; values are None when the
        directory is not a git checkout.
    """
    gitrev = _git(config_dir, "rev-parse", "HEAD")
    if gitrev is None:
        return {"gitrev": None, "dirty": None}
    status = _git(config_dir, "status", "--porcelain")
    return {"gitrev": gitrev, "dirty": bool(status)}


__all__ = [
    "ImageDefinition",
    "LoadedDefinition",
    "config_provenance",
    "load_image_definition",
    "select_variants",
]
