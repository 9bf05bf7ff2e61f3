"""Blob storage backends for caches, artifacts and logs."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class StorageBackend(Protocol):
    """Protocol for storage backend implementations."""

    async def read(self, path: str) -> bytes | None: ...
    async def write(self, path: str, content: bytes) -> None: ...
    async def list(self, prefix: str) -> list[str]: ...
    async def delete(self, path: str) -> None: ...


class LocalStorage:
    """Filesystem-based storage backend."""

    def __init__(self, base_dir: str | Path = "./.gantry/storage") -> None:
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _safe_path(self, path: str) -> Path:
        """Resolve path and ensure it stays within base_dir."""
        resolved = (self.base_dir / path).resolve()
        if resolved != self.base_dir and self.base_dir not in resolved.parents:
            raise ValueError(f"Path traversal denied: {path}")
        return resolved

    async def read(self, path: str) -> bytes | None:
        """Read content from a file."""
        file_path = self._safe_path(path)
        if not file_path.is_file():
            return None
        return file_path.read_bytes()

    async def write(self, path: str, content: bytes) -> None:
        """Write content to a file (atomically, via a temporary sibling)."""
        file_path = self._safe_path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = file_path.with_name(f".{file_path.name}.{os.getpid()}.tmp")
        tmp.write_bytes(content)
        os.replace(tmp, file_path)

    async def list(self, prefix: str) -> list[str]:
        """List files matching a prefix."""
        safe_base = self._safe_path(prefix) if prefix else self.base_dir
        search_dir = safe_base if safe_base.is_dir() else safe_base.parent
        if not search_dir.exists():
            return []
        results: list[str] = []
        for p in search_dir.rglob("*"):
            if p.is_file() and not p.name.endswith(".tmp"):
                rel = p.relative_to(self.base_dir).as_posix()
                if rel.startswith(prefix):
                    results.append(rel)
        return sorted(results)

    async def delete(self, path: str) -> None:
        """Delete a file."""
        file_path = self._safe_path(path)
        if file_path.exists():
            file_path.unlink()


class S3Storage:
    """S3-compatible storage backend (works with MinIO)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
    ) -> None:
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key

    def _get_session(self):
        """Create an aioboto3 session."""
        import aioboto3

        return aioboto3.Session(
            aws_access_key_id=self.aws_access_key_id,
            aws_secret_access_key=self.aws_secret_access_key,
        )

    async def read(self, path: str) -> bytes | None:
        """Read content from S3."""
        session = self._get_session()
        async with session.client("s3", endpoint_url=self.endpoint_url) as s3:
            try:
                resp = await s3.get_object(Bucket=self.bucket, Key=path)
                return await resp["Body"].read()
            except s3.exceptions.NoSuchKey:
                return None

    async def write(self, path: str, content: bytes) -> None:
        """Write content to S3."""
        session = self._get_session()
        async with session.client("s3", endpoint_url=self.endpoint_url) as s3:
            await s3.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=content,
                ContentType="application/octet-stream",
            )

    async def list(self, prefix: str) -> list[str]:
        """List objects matching a prefix."""
        session = self._get_session()
        async with session.client("s3", endpoint_url=self.endpoint_url) as s3:
            results: list[str] = []
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    results.append(obj["Key"])
            return sorted(results)

    async def delete(self, path: str) -> None:
        """Delete an object from S3."""
        session = self._get_session()
        async with session.client("s3", endpoint_url=self.endpoint_url) as s3:
            await s3.delete_object(Bucket=self.bucket, Key=path)


def create_storage() -> StorageBackend:
    """Build the storage backend selected by ``settings.storage_backend``."""
    from gantry.config import settings

    if settings.storage_backend == "s3":
        logger.info(f"Using S3 storage (bucket={settings.storage_bucket})")
        return S3Storage(
            bucket=settings.storage_bucket,
            endpoint_url=settings.storage_endpoint,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
    return LocalStorage(settings.data_path / "storage")
