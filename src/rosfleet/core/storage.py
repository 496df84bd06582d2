"""Blob storage for backup files.

Two backends share one interface: an S3-compatible bucket (Cloudflare R2,
MinIO, AWS) accessed with boto3, and a local directory for single-host
installs. Every upload reports a SHA-256 checksum computed over the bytes
that were sent, so callers can verify downloads independently.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import boto3
from botocore.exceptions import ClientError

from rosfleet.core.errors import BackupIntegrityError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UploadResult:
    """Outcome of a blob upload."""

    key: str
    checksum: str
    size: int
    etag: str = ""


def calculate_checksum(content: bytes | str) -> str:
    """Return the SHA-256 hex digest of the content."""

    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


class BlobStore(ABC):
    """Interface of the object store holding backup bytes."""

    @abstractmethod
    def upload(self, key: str, content: bytes, content_type: str = "application/octet-stream") -> UploadResult:
        """Store bytes under ``key``."""

    @abstractmethod
    def download(self, key: str) -> bytes:
        """Return the bytes stored under ``key``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the object stored under ``key``."""

    @abstractmethod
    def presigned_url(self, key: str, ttl_seconds: int = 3600) -> str:
        """Return a time-limited URL for reading ``key``."""

    @abstractmethod
    def list(self, prefix: str) -> list[str]:
        """Return keys starting with ``prefix``."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return True when ``key`` is present."""


def download_and_verify(store: BlobStore, key: str, expected_checksum: str) -> bytes:
    """Download ``key`` and fail unless its SHA-256 equals ``expected_checksum``."""

    content = store.download(key)
    actual = calculate_checksum(content)
    if actual != expected_checksum:
        raise BackupIntegrityError(
            f"Checksum mismatch for {key}. Expected: {expected_checksum}, Got: {actual}"
        )
    return content


class S3BlobStore(BlobStore):
    """S3-compatible object storage (R2, MinIO, AWS S3)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region: str = "auto",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client=None,
    ) -> None:
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def upload(self, key: str, content: bytes, content_type: str = "application/octet-stream") -> UploadResult:
        response = self._client.put_object(
            Bucket=self.bucket, Key=key, Body=content, ContentType=content_type
        )
        logger.debug("s3 upload key=%s bytes=%d", key, len(content))
        return UploadResult(
            key=key,
            checksum=calculate_checksum(content),
            size=len(content),
            etag=str(response.get("ETag", "")).strip('"'),
        )

    def download(self, key: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)

    def presigned_url(self, key: str, ttl_seconds: int = 3600) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )

    def list(self, prefix: str) -> list[str]:
        keys: list[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []) if item.get("Key"))
        return keys

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if status == 404 or exc.response.get("Error", {}).get("Code") in ("404", "NotFound"):
                return False
            raise
        return True


def _probe_directory(path: Path) -> tuple[bool, str | None]:
    """Try to create and write to the directory, returning success and reason."""

    try:
        path.mkdir(parents=True, exist_ok=True)
        test_file = path / ".write-test"
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("probe")
        test_file.unlink(missing_ok=True)
        return True, None
    except OSError as exc:
        return False, str(exc)


class LocalBlobStore(BlobStore):
    """Blob store backed by a local directory; keys map to relative paths."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path).expanduser()

    def initialize(self) -> None:
        ok, reason = _probe_directory(self.base_path)
        if not ok:
            raise OSError(f"Backup directory {self.base_path} is not writable: {reason}")

    def _path(self, key: str) -> Path:
        candidate = (self.base_path / key).resolve()
        if self.base_path.resolve() not in candidate.parents:
            raise ValueError(f"Storage key escapes the backup directory: {key}")
        return candidate

    def upload(self, key: str, content: bytes, content_type: str = "application/octet-stream") -> UploadResult:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.debug("saved path=%s bytes=%d", path, len(content))
        return UploadResult(key=key, checksum=calculate_checksum(content), size=len(content))

    def download(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {key}")
        return path.read_bytes()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def presigned_url(self, key: str, ttl_seconds: int = 3600) -> str:
        # Local files carry no expiry; the URL is only meaningful on this host.
        return self._path(key).as_uri()

    def list(self, prefix: str) -> list[str]:
        if not self.base_path.exists():
            return []
        keys = (
            path.relative_to(self.base_path).as_posix()
            for path in self.base_path.rglob("*")
            if path.is_file() and path.name != ".write-test"
        )
        return sorted(key for key in keys if key.startswith(prefix))

    def exists(self, key: str) -> bool:
        return self._path(key).exists()
