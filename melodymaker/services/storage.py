"""
Owned object storage for finished audio (S3-compatible).

Contract:
  - ``put_object(key, data, content_type)`` → ``StoredObject(key, public_url)``
  - ``get_object(key)`` → bytes

Writes are conditional (``If-None-Match: *``), so an existing key is never
overwritten; callers derive collision-free keys (track id + timestamp).
Any S3-compatible endpoint works (AWS, MinIO, Supabase Storage S3 gateway)
via MELODY_AWS_S3_ENDPOINT_URL.

boto3 is synchronous; calls run in a worker thread so the event loop is
never blocked on storage I/O.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, cast

from typing_extensions import TypedDict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from melodymaker.config import settings
from melodymaker.services.errors import StorageError

logger = logging.getLogger(__name__)

# Use Signature Version 4. SigV2 (legacy) can cause 403 from S3.
S3_CONFIG = Config(signature_version="s3v4")

AUDIO_CACHE_CONTROL = "max-age=3600"


class _S3StreamingBody(Protocol):
    """Structural interface for the streaming body returned by S3 get_object."""

    def read(self) -> bytes: ...


class _GetObjectResponse(TypedDict):
    """Typed subset of the boto3 get_object response that we actually use."""

    Body: _S3StreamingBody


class _S3Client(Protocol):
    """Structural interface for the boto3 S3 client methods used in this module."""

    def put_object(self, **kwargs: object) -> dict[str, object]: ...
    def get_object(self, *, Bucket: str, Key: str) -> _GetObjectResponse: ...
    def head_bucket(self, *, Bucket: str) -> dict[str, object]: ...


@dataclass(frozen=True)
class StoredObject:
    """Where an object landed and how the public reaches it."""

    key: str
    public_url: str


class S3ObjectStore:
    """Object store backed by one S3 bucket."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client: Optional[_S3Client] = None,
    ):
        self.bucket = bucket if bucket is not None else settings.aws_s3_music_bucket
        self.region = region or settings.aws_region
        self.endpoint_url = endpoint_url if endpoint_url is not None else settings.aws_s3_endpoint_url
        self.public_base_url = (
            public_base_url if public_base_url is not None else settings.storage_public_base_url
        )
        self._client = client

    def _bucket(self) -> str:
        """Return the configured bucket name, raising if unset."""
        if not self.bucket:
            raise StorageError("MELODY_AWS_S3_MUSIC_BUCKET is not set")
        return self.bucket

    def _s3(self) -> _S3Client:
        if self._client is None:
            endpoint = self.endpoint_url or f"https://s3.{self.region}.amazonaws.com"
            # boto3 has no type stubs; cast to our Protocol at the untyped library boundary.
            self._client = cast(
                _S3Client,
                boto3.client(
                    "s3",
                    region_name=self.region,
                    endpoint_url=endpoint,
                    config=S3_CONFIG,
                ),
            )
        return self._client

    def public_url(self, key: str) -> str:
        """Durable public URL for ``key``."""
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self._bucket()}/{key}"
        return f"https://{self._bucket()}.s3.{self.region}.amazonaws.com/{key}"

    def _put_sync(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self._s3().put_object(
                Bucket=self._bucket(),
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=AUDIO_CACHE_CONTROL,
                IfNoneMatch="*",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("PreconditionFailed", "412"):
                raise StorageError(f"Object already exists: {key}") from e
            raise StorageError(f"S3 put_object failed for {key}: {code or e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 unavailable: {e}") from e

    async def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject:
        """Store ``data`` under ``key`` (never overwriting) and return its public URL."""
        bucket = self._bucket()
        await asyncio.to_thread(self._put_sync, key, data, content_type)
        logger.info(f"✅ Stored {len(data)} bytes at s3://{bucket}/{key}")
        return StoredObject(key=key, public_url=self.public_url(key))

    def _get_sync(self, key: str) -> bytes:
        try:
            resp = self._s3().get_object(Bucket=self._bucket(), Key=key)
            return resp["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            raise StorageError(f"S3 get_object failed for {key}: {code or e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 unavailable: {e}") from e

    async def get_object(self, key: str) -> bytes:
        """Return the bytes stored under ``key``."""
        return await asyncio.to_thread(self._get_sync, key)

    def check_reachable(self) -> bool:
        """Return True if the bucket is reachable with current credentials."""
        try:
            self._s3().head_bucket(Bucket=self._bucket())
            return True
        except (ClientError, BotoCoreError, StorageError) as e:
            logger.warning("S3 head_bucket failed: %s", e)
            return False


_object_store: Optional[S3ObjectStore] = None


def get_object_store() -> S3ObjectStore:
    """Return the process-wide object store."""
    global _object_store
    if _object_store is None:
        _object_store = S3ObjectStore()
    return _object_store


def reset_object_store() -> None:
    """Forget the process-wide object store (for testing)."""
    global _object_store
    _object_store = None
