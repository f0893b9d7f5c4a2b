"""Checksum computation for change detection.

This module handles:
- Fingerprints over raw bytes (SHA-256, lowercase hex)
- The image input checksum over (tree commit, config checksum)
- Streaming file hashes for artifacts

The image input checksum is compared byte-for-byte against stored history,
so the field order and the newline separator must never change.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

INPUT_CHECKSUM_SEPARATOR = "\n"


def fingerprint(data: bytes) -> str:
    """Compute the fingerprint of raw bytes.

    Args:
        data: Bytes to hash.

    Returns:
        SHA-256 hex digest.
    """
    return hashlib.sha256(data).hexdigest()


def input_checksum(tree_commit: str, config_checksum: str) -> str:
    """Compute the image input checksum.

    Args:
        tree_commit: Content-addressed identifier of the composed tree.
        config_checksum: Checksum of the image definition.

    Returns:
        SHA-256 hex digest of ``tree_commit + "\\n" + config_checksum``.
    """
    payload = f"{tree_commit}{INPUT_CHECKSUM_SEPARATOR}{config_checksum}"
    return fingerprint(payload.encode("utf-8"))


def file_checksum(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def config_checksum(path: Path) -> str:
    """Compute the checksum of the raw image definition input."""
    return fingerprint(path.read_bytes())


__all__ = [
    "HASH_CHUNK_SIZE",
    "INPUT_CHECKSUM_SEPARATOR",
    "config_checksum",
    "file_checksum",
    "fingerprint",
    "input_checksum",
]
