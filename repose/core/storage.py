"""
Object storage abstraction. S3 OR local filesystem. Controlled by FF_USE_S3 flag.

Objects are addressed by a key ("repose/<batch>/<output>_4K_<ts>.jpg");
upload() returns the public URL for that key.
"""

import asyncio
import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

LOCAL_URL_PREFIX = "/v1/files/"


class StorageBackend(ABC):
    @abstractmethod
    async def upload(
        self, key: str, file_bytes: bytes, content_type: Optional[str] = None
    ) -> str:
        """Store bytes under key (overwriting). Returns the public URL."""
        ...

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Public/accessible URL for a stored key."""
        ...

    async def read(self, key: str) -> Optional[bytes]:
        """Read an object back. None if missing or unsupported."""
        return None

    async def delete(self, key: str) -> None:
        return None


class S3Storage(StorageBackend):
    def __init__(self):
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3

            settings = get_settings()
            kwargs = {"region_name": settings.aws_region}
            if settings.aws_access_key_id:
                kwargs["aws_access_key_id"] = settings.aws_access_key_id
                kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
            self._client = boto3.client("s3", **kwargs)
        return self._client

    async def upload(
        self, key: str, file_bytes: bytes, content_type: Optional[str] = None
    ) -> str:
        settings = get_settings()
        key = key.strip("/")
        client = self._get_client()
        # boto3 is blocking; 4K renders are several MB
        await asyncio.to_thread(
            client.put_object,
            Bucket=settings.s3_bucket_name,
            Key=key,
            Body=file_bytes,
            ContentType=content_type or guess_content_type(key),
        )
        logger.info("Uploaded to S3: %s (%d bytes)", key, len(file_bytes))
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        settings = get_settings()
        return f"https://{settings.s3_bucket_name}.s3.{settings.aws_region}.amazonaws.com/{key.strip('/')}"

    async def delete(self, key: str) -> None:
        settings = get_settings()
        client = self._get_client()
        await asyncio.to_thread(
            client.delete_object, Bucket=settings.s3_bucket_name, Key=key.strip("/")
        )


class LocalStorage(StorageBackend):
    def __init__(self, base_path: str = "./local_storage"):
        self.base_path = Path(base_path)

    def path_for(self, key: str) -> Path:
        path = (self.base_path / key.strip("/")).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes base path: {key}")
        return path

    async def upload(
        self, key: str, file_bytes: bytes, content_type: Optional[str] = None
    ) -> str:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(file_bytes)
        logger.info("Saved locally: %s (%d bytes)", path, len(file_bytes))
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        return f"{LOCAL_URL_PREFIX}{key.strip('/')}"

    async def read(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        if path.is_file():
            path.unlink()


_storage: Optional[StorageBackend] = None


def get_storage() -> StorageBackend:
    """Return the active storage backend based on feature flags."""
    global _storage
    if _storage is None:
        if get_flags().use_s3:
            _storage = S3Storage()
        else:
            _storage = LocalStorage(get_settings().local_storage_path)
    return _storage


def set_storage(backend: Optional[StorageBackend]) -> None:
    """Swap the active backend (tests, scripts)."""
    global _storage
    _storage = backend


def guess_content_type(filename: str) -> str:
    ct, _ = mimetypes.guess_type(filename)
    return ct or "application/octet-stream"
