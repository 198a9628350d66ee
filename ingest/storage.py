"""
Object storage gateway for raw uploads, encoded HLS output and thumbnails.

Talks to any S3-compatible store (AWS S3, MinIO, R2) through boto3. The boto3
client is synchronous, so every call runs in a worker thread via
``asyncio.to_thread`` to keep the event loop free.

Storage layout:
    videos-raw/<videoId><ext>             - uploaded source file
    videos-encoded/<videoId>/master.m3u8  - HLS master playlist
    videos-encoded/<videoId>/<q>.m3u8     - variant playlist per quality
    videos-encoded/<videoId>/<q>_0000.ts  - variant segments
    thumbnails/<videoId>/thumbnail.jpg

Video rows store the raw location as a single ``"bucket/key"`` string.
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

from config import (
    DEFAULT_VIDEO_EXTENSION,
    ENCODED_BUCKET,
    S3_ACCESS_KEY_ID,
    S3_ENDPOINT_URL,
    S3_REGION,
    S3_SECRET_ACCESS_KEY,
    STORAGE_PUBLIC_URL,
    THUMBNAIL_BUCKET,
)
from ingest.errors import StorageError

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000

_MISSING_OBJECT_CODES = ("404", "NoSuchKey", "NotFound")

# ---------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------


def split_storage_path(path: str) -> Tuple[str, str]:
    """Split ``"bucket/key/with/slashes"`` on the first slash.

    Raises:
        ValueError: If the path has no key part
    """
    bucket, sep, key = path.partition("/")
    if not bucket or not sep or not key:
        raise ValueError(f"Invalid storage path: {path!r}")
    return bucket, key


def build_storage_path(bucket: str, key: str) -> str:
    return f"{bucket}/{key}"


def raw_object_key(video_id: str, filename: str) -> str:
    """Key for an uploaded source file: the video id plus the original extension."""
    ext = Path(filename).suffix.lower() or DEFAULT_VIDEO_EXTENSION
    return f"{video_id}{ext}"


def encoded_prefix(video_id: str) -> str:
    return f"{video_id}/"


def master_playlist_key(video_id: str) -> str:
    return f"{video_id}/master.m3u8"


def thumbnail_key(video_id: str) -> str:
    return f"{video_id}/thumbnail.jpg"


def public_url(bucket: str, key: str, base_url: str = STORAGE_PUBLIC_URL) -> str:
    return f"{base_url.rstrip('/')}/{bucket}/{key}"


def _error_code(exc: ClientError) -> Optional[str]:
    return (exc.response.get("Error") or {}).get("Code")


# ---------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------


class S3StorageGateway:
    """Async facade over a boto3 S3 client."""

    def __init__(self, client=None):
        self._client = client or boto3.client(
            "s3",
            region_name=S3_REGION,
            endpoint_url=S3_ENDPOINT_URL or None,
            aws_access_key_id=S3_ACCESS_KEY_ID or None,
            aws_secret_access_key=S3_SECRET_ACCESS_KEY or None,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},  # MinIO needs path-style addressing
            ),
        )

    # -----------------------------------------------------------------
    # Presigned URLs
    # -----------------------------------------------------------------

    async def generate_upload_url(self, bucket: str, key: str, content_type: str, expires_in: int) -> str:
        """Presigned PUT URL; the client must send the same Content-Type."""
        return await asyncio.to_thread(
            self._client.generate_presigned_url,
            ClientMethod="put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )

    async def generate_download_url(self, bucket: str, key: str, expires_in: int) -> str:
        return await asyncio.to_thread(
            self._client.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    async def object_exists(self, bucket: str, key: str) -> bool:
        """
        Check object existence with HEAD.

        Missing objects return False; any other error (credentials, network)
        propagates so callers never mistake an outage for a missing upload.
        """
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _MISSING_OBJECT_CODES:
                return False
            raise

    async def get_object(self, bucket: str, key: str) -> bytes:
        def _read() -> bytes:
            response = self._client.get_object(Bucket=bucket, Key=key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()

        return await asyncio.to_thread(_read)

    async def download_file(self, bucket: str, key: str, local_path: Path) -> None:
        """Stream an object to disk (multipart-aware via boto3's transfer manager)."""
        local_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self._client.download_file, bucket, key, str(local_path))

    async def list_objects(self, bucket: str, prefix: str) -> List[str]:
        """All keys under ``prefix`` (follows pagination)."""

        def _list() -> List[str]:
            keys: List[str] = []
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    keys.append(item["Key"])
            return keys

        return await asyncio.to_thread(_list)

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    async def upload_file(
        self, local_path: Path, bucket: str, key: str, content_type: Optional[str] = None
    ) -> None:
        content_type = content_type or mimetypes.guess_type(str(local_path))[0] or "application/octet-stream"
        await asyncio.to_thread(
            self._client.upload_file,
            str(local_path),
            bucket,
            key,
            ExtraArgs={"ContentType": content_type},
        )

    async def delete_object(self, bucket: str, key: str) -> None:
        """Delete one object. Deleting a missing key is not an error in S3."""
        await asyncio.to_thread(self._client.delete_object, Bucket=bucket, Key=key)

    async def delete_objects(self, bucket: str, keys: Sequence[str]) -> int:
        """
        Bulk delete in chunks of 1000.

        Returns:
            Number of keys deleted

        Raises:
            StorageError: If any key could not be deleted
        """
        deleted = 0
        keys = list(keys)
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            chunk = keys[start:start + DELETE_BATCH_SIZE]
            response = await asyncio.to_thread(
                self._client.delete_objects,
                Bucket=bucket,
                Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": True},
            )
            errors = response.get("Errors") or []
            if errors:
                first = errors[0]
                raise StorageError(
                    f"Failed to delete {len(errors)} object(s) from {bucket}: "
                    f"{first.get('Key')}: {first.get('Code')} {first.get('Message')}"
                )
            deleted += len(chunk)
        return deleted

    async def delete_prefix(self, bucket: str, prefix: str) -> int:
        """Delete every object under ``prefix``; returns how many were removed."""
        if not prefix:
            raise ValueError("Refusing to delete an empty prefix")
        keys = await self.list_objects(bucket, prefix)
        if not keys:
            return 0
        deleted = await self.delete_objects(bucket, keys)
        logger.debug(f"Deleted {deleted} object(s) under {bucket}/{prefix}")
        return deleted


async def purge_video_objects(storage, video_id: str, raw_file_path: Optional[str]) -> None:
    """
    Remove every stored object of a video, in order: raw upload, encoded
    output, thumbnail. Any storage error propagates so the caller can keep
    the database row for a later attempt.
    """
    if raw_file_path:
        bucket, key = split_storage_path(raw_file_path)
        await storage.delete_object(bucket, key)
    await storage.delete_prefix(ENCODED_BUCKET, encoded_prefix(video_id))
    await storage.delete_object(THUMBNAIL_BUCKET, thumbnail_key(video_id))
