import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

import boto3
import jwt
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from config import Settings
from services.exceptions import ConfigurationError, PermissionDenied, StorageError

logger = logging.getLogger(__name__)

BUCKET = "documents"


def storage_path(file_url: str) -> Optional[str]:
    """The object path behind a file reference, or None when it is already a public URL."""
    if file_url.startswith(("http://", "https://")):
        return None
    path = file_url.lstrip("/")
    if path.startswith(f"{BUCKET}/"):
        path = path[len(BUCKET) + 1:]
    return path


def company_of_path(path: str) -> Optional[uuid.UUID]:
    """Company stored objects live under `{company_id}/...`. Parked and malformed paths have no company."""
    segments = path.split("/")
    if ".." in segments:
        return None
    try:
        return uuid.UUID(segments[0])
    except ValueError:
        return None


class StorageBackend:
    """Object store keyed by path strings under the `documents` namespace."""

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        raise NotImplementedError

    async def download(self, path: str) -> bytes:
        raise NotImplementedError

    async def remove(self, paths: Iterable[str]) -> None:
        raise NotImplementedError

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        raise NotImplementedError


class LocalStorage(StorageBackend):
    """
    Filesystem storage for development and tests.

    Signed URLs point at the /files route and carry a JWT holding the path and its expiry.
    """

    def __init__(self, settings: Settings):
        self.root = Path(settings.local_storage_dir).resolve() / BUCKET
        self.app_url = settings.app_url.rstrip("/")
        self.secret_key = settings.secret_key
        self.algorithm = settings.jwt_algorithm

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root not in target.parents:
            raise StorageError(f"Invalid storage path: {path}")
        return target

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        target = self._resolve(path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as f:
                f.write(data)

        try:
            await run_in_threadpool(_write)
        except OSError as e:
            raise StorageError(f"Upload failed for {path}: {e.strerror or e}")

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await run_in_threadpool(target.read_bytes)
        except OSError as e:
            raise StorageError(f"Download failed for {path}: {e.strerror or e}")

    async def remove(self, paths: Iterable[str]) -> None:
        targets = [self._resolve(p) for p in paths]

        def _unlink():
            for target in targets:
                if target.exists():
                    os.remove(target)

        try:
            await run_in_threadpool(_unlink)
            logger.info("Removed %d local objects", len(targets))
        except OSError as e:
            raise StorageError(f"Remove failed: {e.strerror or e}")

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        if not self._resolve(path).exists():
            raise StorageError(f"Object not found: {path}")
        expire = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        token = jwt.encode({"path": path, "exp": expire, "scope": "file"}, self.secret_key, algorithm=self.algorithm)
        return f"{self.app_url}/files/{token}"

    def verify_signed_token(self, token: str) -> str:
        """Return the storage path a signed URL token grants access to."""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise PermissionDenied("File link expired", code="link_expired")
        except jwt.InvalidTokenError:
            raise PermissionDenied("Invalid file link")
        if payload.get("scope") != "file" or not payload.get("path"):
            raise PermissionDenied("Invalid file link")
        return payload["path"]


class S3Storage(StorageBackend):
    """S3 bucket storage; boto3 calls run in the threadpool to keep the event loop free."""

    def __init__(self, settings: Settings):
        if not settings.s3_bucket_name:
            raise ConfigurationError("S3 storage selected but S3_BUCKET_NAME is not set")
        self.s3_client = boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )
        self.bucket_name = settings.s3_bucket_name

    def _key(self, path: str) -> str:
        return f"{BUCKET}/{path.lstrip('/')}"

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        extra_args = {"ContentType": content_type} if content_type else {}
        try:
            await run_in_threadpool(
                self.s3_client.put_object, Bucket=self.bucket_name, Key=self._key(path), Body=data, **extra_args
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload failed for {path}: {e}")

    async def download(self, path: str) -> bytes:
        try:
            response = await run_in_threadpool(self.s3_client.get_object, Bucket=self.bucket_name, Key=self._key(path))
            return await run_in_threadpool(response["Body"].read)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Download failed for {path}: {e}")

    async def remove(self, paths: Iterable[str]) -> None:
        objects = [{"Key": self._key(p)} for p in paths]
        if not objects:
            return
        try:
            await run_in_threadpool(
                self.s3_client.delete_objects, Bucket=self.bucket_name, Delete={"Objects": objects, "Quiet": True}
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Remove failed: {e}")

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        try:
            return await run_in_threadpool(
                self.s3_client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": self._key(path)},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not sign URL for {path}: {e}")


def create_storage(settings: Settings) -> StorageBackend:
    if settings.storage_backend == "s3":
        return S3Storage(settings)
    if settings.storage_backend == "local":
        return LocalStorage(settings)
    raise ConfigurationError(f"Unknown STORAGE_BACKEND: {settings.storage_backend}")
