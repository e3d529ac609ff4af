"""
Object publishers: write uploaded bytes somewhere durable and return a locator.

Key layout (shared by every backend):

    thumbnails/{random}.jpg|.png
    landscape/{random}.mp4
    portrait/{random}.mp4
    other/{random}.mp4

`{random}` is 32 bytes from the OS CSPRNG, URL-safe base64 without padding,
so keys never collide in practice and re-uploads never overwrite.
"""

import asyncio
import base64
import functools
import logging
import os
import secrets
from pathlib import Path
from typing import Any, BinaryIO, Optional, Protocol

import boto3

from api.errors import PublishError
from config import AppConfig

logger = logging.getLogger(__name__)

KEY_RANDOM_BYTES = 32
COPY_CHUNK_SIZE = 1024 * 1024


def generate_object_key(prefix: str, extension: str) -> str:
    """Build a collision-resistant storage key namespaced by `prefix`."""
    return f"{prefix}/{secrets.token_urlsafe(KEY_RANDOM_BYTES)}{extension}"


def make_composite_locator(bucket: str, key: str) -> str:
    return f"{bucket},{key}"


def split_composite_locator(locator: Optional[str]) -> Optional[tuple]:
    """Return (bucket, key) for a composite locator, or None for anything else."""
    if not locator or locator.startswith(("data:", "http://", "https://", "/")):
        return None
    bucket, sep, key = locator.partition(",")
    if not sep or not bucket or not key:
        return None
    return bucket, key


class ObjectPublisher(Protocol):
    async def publish(self, key: str, source: BinaryIO, content_type: str) -> str:
        ...


class LocalPublisher:
    """Stores objects under a local directory served at `/assets`."""

    def __init__(self, root: Path, url_prefix: str, chunk_size: int = COPY_CHUNK_SIZE):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.chunk_size = chunk_size

    def path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise PublishError(cause=ValueError(f"Key escapes asset root: {key!r}"))
        return path

    def _write(self, path: Path, source: BinaryIO) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".part")
        total = 0
        try:
            with open(partial, "wb") as f:
                while True:
                    chunk = source.read(self.chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
                    total += len(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(partial, path)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return total

    async def publish(self, key: str, source: BinaryIO, content_type: str) -> str:
        path = self.path_for(key)
        loop = asyncio.get_running_loop()
        try:
            size = await loop.run_in_executor(None, self._write, path, source)
        except (OSError, IOError) as e:
            raise PublishError(cause=e) from e
        logger.info(f"Stored {key} ({size} bytes, {content_type}) on local disk")
        return f"{self.url_prefix}/{key}"


class S3Publisher:
    """Stores objects in an S3 bucket with PutObject, streaming from the source file."""

    def __init__(self, client: Any, bucket: str, cdn_domain: str = ""):
        self.client = client
        self.bucket = bucket
        self.cdn_domain = cdn_domain

    def locator_for(self, key: str) -> str:
        if self.cdn_domain:
            return f"https://{self.cdn_domain}/{key}"
        return make_composite_locator(self.bucket, key)

    async def publish(self, key: str, source: BinaryIO, content_type: str) -> str:
        loop = asyncio.get_running_loop()
        put = functools.partial(
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=source,
            ContentType=content_type,
        )
        try:
            await loop.run_in_executor(None, put)
        except Exception as e:
            raise PublishError("Couldn't upload file to S3", cause=e) from e
        logger.info(f"Stored s3://{self.bucket}/{key} ({content_type})")
        return self.locator_for(key)


class DataURIPublisher:
    """
    Inlines the whole payload into the locator as a base64 data URI.

    Buffers everything in memory, so it is only suitable for small thumbnails.
    The key is ignored; the record itself becomes the storage.
    """

    async def publish(self, key: str, source: BinaryIO, content_type: str) -> str:
        try:
            data = source.read()
        except (OSError, IOError) as e:
            raise PublishError(cause=e) from e
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{content_type};base64,{encoded}"


def create_s3_client(config: AppConfig) -> Any:
    """Create a boto3 S3 client from configuration."""
    return boto3.client(
        "s3",
        region_name=config.s3_region,
        endpoint_url=config.s3_endpoint_url,
    )


def build_publishers(config: AppConfig, s3_client: Optional[Any] = None) -> tuple:
    """
    Return (thumbnail_publisher, video_publisher) for the configured backend.

    Thumbnails use the same backend as videos unless inline storage is selected.
    """
    if config.storage_backend == "s3":
        if s3_client is None:
            raise ValueError("An S3 client is required for the s3 storage backend")
        video_publisher = S3Publisher(s3_client, config.s3_bucket, cdn_domain=config.s3_cdn_domain)
    else:
        video_publisher = LocalPublisher(
            config.assets_root, config.assets_url_prefix, chunk_size=config.upload_chunk_size
        )

    if config.thumbnail_storage == "inline":
        thumbnail_publisher = DataURIPublisher()
    else:
        thumbnail_publisher = video_publisher
    return thumbnail_publisher, video_publisher
