"""Archival upload of committed builds.

Uploads a build record and its artifacts to an external build archive over
HTTP:

    POST {base}/builds                          build record (meta.json)
    PUT  {base}/builds/{id}/artifacts/{kind}    one request per artifact

The archive answers the POST with ``{"id": <confirmation id>}``.
Connection retries are handled by the transport; authentication is a
bearer token.
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from imagebuild.builds.models import BuildRecord
from imagebuild.errors import CollaboratorFailure, InputError

logger = logging.getLogger(__name__)

UPLOAD_STAGE = "upload"

# Connection-level retries for the HTTP transport
UPLOAD_RETRIES = 3


def _failure(message: str, artifact_kind: str | None = None) -> CollaboratorFailure:
    return CollaboratorFailure(
        message, stage=UPLOAD_STAGE, artifact_kind=artifact_kind, code="upload_failed"
    )


def upload_build(
    client: httpx.Client,
    base_url: str,
    record: BuildRecord,
    build_dir: Path,
) -> str:
    """Upload a build record and its artifacts.

    Args:
        client: HTTPX client instance.
        base_url: Archive base URL.
        record: Committed build record.
        build_dir: Committed build directory holding the artifacts.

    Returns:
        Confirmation id assigned by the archive.

    Raises:
        CollaboratorFailure: If the archive rejects the upload or is unreachable.
    """
    base_url = base_url.rstrip("/")

    try:
        response = client.post(f"{base_url}/builds", json=record.to_meta())
        response.raise_for_status()
        confirmation = response.json().get("id")
    except httpx.HTTPStatusError as e:
        raise _failure(
            f"Archive rejected build {record.build_id}: HTTP {e.response.status_code}"
        ) from e
    except (httpx.HTTPError, ValueError) as e:
        raise _failure(f"Failed to register build {record.build_id}: {e}") from e

    if not confirmation:
        raise _failure(f"Archive returned no confirmation id for {record.build_id}")

    for kind, artifact in sorted(record.artifacts.items()):
        path = record.artifact_path(build_dir, kind)
        logger.info("Uploading %s (%d bytes)", path.name, artifact.size)
        try:
            with path.open("rb") as f:
                response = client.put(
                    f"{base_url}/builds/{confirmation}/artifacts/{kind}",
                    content=f,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "X-Content-SHA256": artifact.sha256,
                    },
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise _failure(
                f"Archive rejected artifact {kind}: HTTP {e.response.status_code}",
                artifact_kind=kind,
            ) from e
        except (httpx.HTTPError, OSError) as e:
            raise _failure(f"Failed to upload artifact {kind}: {e}", artifact_kind=kind) from e

    logger.info("Archived build %s as %s", record.build_id, confirmation)
    return str(confirmation)


class HttpArchiver:
    """Archival collaborator backed by an HTTP build archive."""

    def __init__(
        self,
        base_url: str | None,
        token: str | None = None,
        timeout: float = 3600,
    ) -> None:
        if not base_url:
            raise InputError("No archive URL configured", code="archive_not_configured")
        self.base_url = base_url
        self.token = token
        self.timeout = timeout

    def upload(self, record: BuildRecord, build_dir: Path) -> str:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        transport = httpx.HTTPTransport(retries=UPLOAD_RETRIES)
        with httpx.Client(
            transport=transport, headers=headers, timeout=self.timeout
        ) as client:
            return upload_build(client, self.base_url, record, build_dir)


__all__ = ["HttpArchiver", "upload_build"]
