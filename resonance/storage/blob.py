"""S3-compatible blob storage used for originals and processing outputs."""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from resonance.config import StorageConfig
from resonance.errors import InputMissingError, StorageError
from resonance.logging import get_logger

logger = get_logger(__name__)

_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})
_HASH_CHUNK = 1024 * 1024


@dataclass(slots=True, frozen=True)
class StoredObject:
    bucket: str
    key: str
    size_bytes: int
    sha256: str
    content_type: str


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


class BlobStorage(Protocol):
    async def download(self, bucket: str, key: str, local_path: Path) -> Path: ...

    async def upload(
        self, bucket: str, key: str, source: Path, content_type: str
    ) -> StoredObject: ...

    async def delete(self, bucket: str, key: str) -> None: ...


class S3BlobStorage:
    """boto3 client wrapper; blocking calls run in worker threads.

    Missing objects raise ``InputMissingError``; every other client failure
    raises ``StorageError`` so the queue can retry.
    """

    def __init__(self, config: StorageConfig, *, client: Any | None = None) -> None:
        self._config = config
        self._client = client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=config.region,
        )

    @property
    def config(self) -> StorageConfig:
        return self._config

    async def download(self, bucket: str, key: str, local_path: Path) -> Path:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(self._client.download_file, bucket, key, str(local_path))
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise InputMissingError("Object", f"{bucket}/{key}") from exc
            raise StorageError(f"download of {bucket}/{key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"download of {bucket}/{key} failed: {exc}") from exc
        logger.debug("Downloaded %s/%s to %s", bucket, key, local_path)
        return local_path

    async def upload(self, bucket: str, key: str, source: Path, content_type: str) -> StoredObject:
        try:
            size = source.stat().st_size
            sha256 = await asyncio.to_thread(file_sha256, source)
            await asyncio.to_thread(
                self._client.upload_file,
                str(source),
                bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError, OSError) as exc:
            raise StorageError(f"upload of {bucket}/{key} failed: {exc}") from exc
        logger.debug("Uploaded %s to %s/%s", source, bucket, key)
        return StoredObject(
            bucket=bucket, key=key, size_bytes=size, sha256=sha256, content_type=content_type
        )

    async def delete(self, bucket: str, key: str) -> None:
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"delete of {bucket}/{key} failed: {exc}") from exc


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


__all__ = ["BlobStorage", "S3BlobStorage", "StoredObject", "file_sha256"]
