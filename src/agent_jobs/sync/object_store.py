"""Object store adapters for scope snapshots (``bucket/key`` addressing)."""

from __future__ import annotations

import io
import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

from minio import Minio
from minio.error import MinioException
from urllib3.exceptions import HTTPError

from agent_jobs.orchestrator.errors import SyncError

logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPE = "application/zip"


class ObjectStore(Protocol):
    """Minimal blob API used by the synchronizer."""

    def get(self, path: str) -> bytes:
        """Download ``bucket/key``; raises ``SyncError``."""

    def put(self, path: str, data: bytes) -> None:
        """Upload ``data`` to ``bucket/key``; raises ``SyncError``."""

    def exists(self, path: str) -> bool:
        """Whether ``bucket/key`` exists."""


def parse_object_path(path: str) -> tuple[str, str]:
    """Split ``bucket/key`` into its parts."""

    bucket, _, key = path.strip().lstrip("/").partition("/")
    if not bucket or not key or key.endswith("/"):
        raise SyncError(f"Malformed object path: {path!r}; expected 'bucket/key'.")
    return bucket, key


class LocalObjectStore:
    """Filesystem-backed store: one directory per bucket."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as error:
            raise SyncError(f"Failed to read object {path}: {error}") from error

    def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as error:
            raise SyncError(f"Failed to write object {path}: {error}") from error

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def _resolve(self, path: str) -> Path:
        bucket, key = parse_object_path(path)
        parts = PurePosixPath(key).parts
        if ".." in parts:
            raise SyncError(f"Object key escapes bucket: {path!r}")
        return self.root / bucket / Path(*parts)


class MinioObjectStore:
    """S3-compatible store via the MinIO SDK; buckets are created on first upload."""

    def __init__(
        self,
        *,
        endpoint: str,
        access_key: str,
        secret_key: str,
        secure: bool = False,
        client: Minio | None = None,
    ) -> None:
        self.client = client or Minio(
            endpoint=endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure,
        )
        self._known_buckets: set[str] = set()

    def get(self, path: str) -> bytes:
        bucket, key = parse_object_path(path)
        response = None
        try:
            response = self.client.get_object(bucket_name=bucket, object_name=key)
            return response.read()
        except (MinioException, HTTPError) as error:
            raise SyncError(f"Failed to download {path}: {error}") from error
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def put(self, path: str, data: bytes) -> None:
        bucket, key = parse_object_path(path)
        try:
            self._ensure_bucket(bucket)
            self.client.put_object(
                bucket_name=bucket,
                object_name=key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=ZIP_CONTENT_TYPE,
            )
        except (MinioException, HTTPError) as error:
            raise SyncError(f"Failed to upload {path}: {error}") from error
        logger.info("Uploaded %s bytes to %s", len(data), path)

    def exists(self, path: str) -> bool:
        bucket, key = parse_object_path(path)
        try:
            self.client.stat_object(bucket_name=bucket, object_name=key)
        except MinioException:
            return False
        except HTTPError as error:
            raise SyncError(f"Failed to stat {path}: {error}") from error
        return True

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._known_buckets:
            return
        if not self.client.bucket_exists(bucket_name=bucket):
            self.client.make_bucket(bucket_name=bucket)
        self._known_buckets.add(bucket)
