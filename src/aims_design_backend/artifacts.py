"""
Artifact storage for finished PSD files.

Artifacts are addressed only by task id, never by fingerprint or by the
presentation filename, so a task started after an earlier one expired can
never pick up a stale file.

Backends:
- LocalArtifactStore: files under a directory chosen at startup
- S3ArtifactStore: objects in an S3 bucket via boto3

The backend is selected by ``artifacts.backend`` in the configuration and
constructed once by the application bootstrap.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .utils import ARTIFACT_SUFFIX, ensure_directory, validate_task_id

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/x-photoshop"


class ArtifactUnavailableError(RuntimeError):
    """The artifact backend could not be reached or refused the request."""


class ArtifactStore(Protocol):
    def write(self, task_id: str, data: bytes) -> None: ...

    def read(self, task_id: str) -> bytes: ...


class LocalArtifactStore:
    """
    Filesystem-backed artifact store.

    Args:
        root: Directory that holds ``{task_id}.psd`` files; created if missing
    """

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root))

    def _path(self, task_id: str) -> Path:
        return self.root / f"{validate_task_id(task_id)}{ARTIFACT_SUFFIX}"

    def write(self, task_id: str, data: bytes) -> None:
        """
        Write artifact bytes atomically.

        Bytes go to a temporary file in the same directory which is then
        renamed over the target, so readers never observe a partial file.
        """
        target = self._path(task_id)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{task_id}-", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info(f"Artifact stored: {target} ({len(data)} bytes)")

    def read(self, task_id: str) -> bytes:
        path = self._path(task_id)
        if not path.is_file():
            raise FileNotFoundError(f"Artifact not found for task {task_id}")
        return path.read_bytes()


class S3ArtifactStore:
    """
    S3-backed artifact store.

    Args:
        bucket: Target bucket name
        prefix: Key prefix inside the bucket (e.g. ``"psd"``)
        client: boto3 S3 client; created with default credentials if omitted
    """

    def __init__(self, bucket: str, prefix: str = "", client: Any = None) -> None:
        if not bucket:
            raise ValueError("S3 artifact store requires a bucket name")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client or boto3.client("s3")

    def _key(self, task_id: str) -> str:
        name = f"{validate_task_id(task_id)}{ARTIFACT_SUFFIX}"
        return f"{self.prefix}/{name}" if self.prefix else name

    def write(self, task_id: str, data: bytes) -> None:
        key = self._key(task_id)
        logger.info(f"Uploading artifact to s3://{self.bucket}/{key}")
        self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=CONTENT_TYPE)
        logger.info(f"Upload successful: s3://{self.bucket}/{key}")

    def read(self, task_id: str) -> bytes:
        key = self._key(task_id)
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"Artifact not found for task {task_id}") from e
            logger.error(f"S3 download failed: {e}")
            raise ArtifactUnavailableError(f"S3 download failed for task {task_id}") from e
        except BotoCoreError as e:
            logger.error(f"S3 unreachable: {e}")
            raise ArtifactUnavailableError(f"S3 unreachable for task {task_id}") from e

