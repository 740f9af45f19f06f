"""Object storage for job inputs and outputs.

Backends: local filesystem, S3 and S3-compatible stores such as MinIO.
Calls are blocking; async callers run them in a worker thread.
"""

import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from abrworker.core.config import settings

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class StorageError(Exception):
    """Raised when an object cannot be read from storage."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"{key}: {message}")


@dataclass
class StorageResult:
    """Outcome of an upload. Failures are reported, not raised."""
    success: bool
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"


class StorageBackend(ABC):
    """Flat key space of immutable objects."""

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Store the file at ``file_path`` under ``key``."""

    @abstractmethod
    def download(self, key: str, destination: str) -> int:
        """Stream an object into a local file.

        Returns:
            Number of bytes written

        Raises:
            StorageError: If the object is missing or unreadable
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def list_files(self, prefix: str = "") -> list[str]:
        """Keys under ``prefix``, in no particular order."""


class LocalStorage(StorageBackend):
    """Objects as files below ``local_path``."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_path / key

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file_path, target)
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))
        return StorageResult(success=True, key=key, file_size=target.stat().st_size)

    def download(self, key: str, destination: str) -> int:
        source = self._path(key)
        if not source.is_file():
            raise StorageError(key, "object not found")
        try:
            shutil.copyfile(source, destination)
        except OSError as e:
            raise StorageError(key, str(e)) from e
        return Path(destination).stat().st_size

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list_files(self, prefix: str = "") -> list[str]:
        root = self._path(prefix) if prefix else self.base_path
        if not root.is_dir():
            return []
        return [
            path.relative_to(self.base_path).as_posix()
            for path in root.rglob("*")
            if path.is_file()
        ]


class S3Storage(StorageBackend):
    """S3 or S3-compatible bucket."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            kwargs = {"region_name": self.config.region or "us-east-1"}
            if self.config.access_key and self.config.secret_key:
                kwargs["aws_access_key_id"] = self.config.access_key
                kwargs["aws_secret_access_key"] = self.config.secret_key
            if self.config.endpoint_url:
                # MinIO and friends want path-style addressing
                kwargs["endpoint_url"] = self.config.endpoint_url
                kwargs["use_ssl"] = self.config.use_ssl
                kwargs["config"] = BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"})
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            size = Path(file_path).stat().st_size
            with open(file_path, "rb") as body:
                response = self.client.put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))
        return StorageResult(
            success=True,
            key=key,
            file_size=size,
            etag=response.get("ETag", "").strip('"'),
        )

    def download(self, key: str, destination: str) -> int:
        written = 0
        try:
            response = self.client.get_object(Bucket=self.config.bucket, Key=key)
            with open(destination, "wb") as out:
                for chunk in response["Body"].iter_chunks(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    out.write(chunk)
                    written += len(chunk)
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageError(key, str(e)) from e
        return written

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def list_files(self, prefix: str = "") -> list[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        return [
            obj["Key"]
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix)
            for obj in page.get("Contents", [])
        ]


def create_backend(config: StorageConfig) -> StorageBackend:
    backend = config.backend.lower()
    if backend == "local":
        return LocalStorage(config)
    if backend in ("s3", "minio", "aws"):
        return S3Storage(config)
    raise ValueError(f"Unsupported storage backend: {config.backend}")


def get_storage() -> StorageBackend:
    """Build the storage backend from settings."""
    return create_backend(
        StorageConfig(
            backend=settings.STORAGE_BACKEND,
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=settings.LOCAL_STORAGE_PATH,
        )
    )
