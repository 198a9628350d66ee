"""
Upload orchestration: presigned upload URLs and upload confirmation.

Clients upload straight to object storage. ``GenerateUploadUrl`` reserves a
video row in ``uploading`` and hands out a presigned PUT URL for it;
``ConfirmUpload`` checks the object really landed before moving the video to
``processing`` and queueing the encoding job.
"""

import logging
import uuid
from typing import Any, Dict

from pydantic import BaseModel, Field, ValidationError, field_validator

from config import (
    ALLOWED_VIDEO_MIME_TYPES,
    MAX_FILENAME_LENGTH,
    MAX_UPLOAD_SIZE,
    MAX_VIDEOS_PER_USER,
    PRESIGNED_URL_EXPIRY,
    RAW_BUCKET,
)
from ingest.common import utcnow
from ingest.contracts import StorageGateway, UserRepository, VideoRepository
from ingest.encoding_queue import EncodingJobData, EncodingJobQueue
from ingest.enums import VideoStatus
from ingest.errors import ErrorCode
from ingest.metrics import UPLOAD_URLS_ISSUED_TOTAL, UPLOADS_CONFIRMED_TOTAL
from ingest.models import Video
from ingest.result import Result
from ingest.storage import build_storage_path, raw_object_key, split_storage_path

logger = logging.getLogger(__name__)


class UploadRequest(BaseModel):
    """Shape of an upload URL request."""

    filename: str = Field(..., min_length=1, max_length=MAX_FILENAME_LENGTH)
    size: int = Field(..., gt=0)
    mime_type: str

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Filename must not be empty")
        return v

    @field_validator("mime_type")
    @classmethod
    def validate_mime_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ALLOWED_VIDEO_MIME_TYPES:
            raise ValueError(f"Unsupported video type: {v}")
        return v


def _first_validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid upload request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "invalid value")


class GenerateUploadUrl:
    """Reserve a video and issue a presigned upload URL for it."""

    def __init__(self, users: UserRepository, videos: VideoRepository, storage: StorageGateway):
        self._users = users
        self._videos = videos
        self._storage = storage

    async def execute(
        self, user_id: str, filename: str, size: int, mime_type: str
    ) -> Result[Dict[str, Any]]:
        try:
            request = UploadRequest(filename=filename, size=size, mime_type=mime_type)
        except ValidationError as e:
            return Result.fail(ErrorCode.VALIDATION_ERROR, _first_validation_message(e))

        if request.size > MAX_UPLOAD_SIZE:
            return Result.fail(
                ErrorCode.VALIDATION_ERROR,
                f"File too large: {request.size} bytes (maximum {MAX_UPLOAD_SIZE})",
                {"max_size": MAX_UPLOAD_SIZE},
            )

        try:
            user = await self._users.find_by_id(user_id)
            if user is None:
                return Result.fail(ErrorCode.USER_NOT_FOUND, "User not found")
            if not user.is_active:
                return Result.fail(ErrorCode.USER_INACTIVE, "User account is not active")
            if not user.email_verified:
                return Result.fail(ErrorCode.EMAIL_NOT_VERIFIED, "Email address is not verified")

            video_count = await self._videos.count_by_uploader(user_id)
            if video_count >= MAX_VIDEOS_PER_USER:
                return Result.fail(
                    ErrorCode.VALIDATION_ERROR,
                    f"Video limit reached ({MAX_VIDEOS_PER_USER})",
                    {"limit": MAX_VIDEOS_PER_USER},
                )

            video_id = str(uuid.uuid4())
            storage_key = raw_object_key(video_id, request.filename)
            upload_url = await self._storage.generate_upload_url(
                RAW_BUCKET, storage_key, request.mime_type, PRESIGNED_URL_EXPIRY
            )

            await self._videos.save(
                Video(
                    id=video_id,
                    uploader_id=user_id,
                    original_filename=request.filename,
                    file_size=request.size,
                    mime_type=request.mime_type,
                    status=VideoStatus.UPLOADING,
                    raw_file_path=build_storage_path(RAW_BUCKET, storage_key),
                    created_at=utcnow(),
                )
            )
        except Exception:
            logger.exception(f"Failed to issue upload URL for user {user_id}")
            return Result.fail(ErrorCode.INTERNAL_ERROR, "Failed to create upload")

        UPLOAD_URLS_ISSUED_TOTAL.inc()
        logger.info(f"Issued upload URL for video {video_id} (user {user_id}, {request.size} bytes)")
        return Result.ok(
            {
                "video_id": video_id,
                "upload_url": upload_url,
                "expires_in": PRESIGNED_URL_EXPIRY,
                "storage_key": storage_key,
            }
        )


class ConfirmUpload:
    """Verify an upload landed and hand the video to the encoding queue."""

    def __init__(self, videos: VideoRepository, storage: StorageGateway, encoding_queue: EncodingJobQueue):
        self._videos = videos
        self._storage = storage
        self._encoding_queue = encoding_queue

    async def execute(self, video_id: str, user_id: str) -> Result[Dict[str, Any]]:
        try:
            video = await self._videos.find_by_id(video_id)
            if video is None:
                return Result.fail(ErrorCode.NOT_FOUND, "Video not found")
            if video.uploader_id != user_id:
                return Result.fail(ErrorCode.FORBIDDEN, "Video belongs to another user")
            if video.status != VideoStatus.UPLOADING:
                return Result.fail(
                    ErrorCode.VALIDATION_ERROR,
                    f"Video is {video.status.value}, expected uploading",
                    {"status": video.status.value},
                )
            if not video.raw_file_path:
                UPLOADS_CONFIRMED_TOTAL.labels(result="rejected").inc()
                return Result.fail(ErrorCode.VALIDATION_ERROR, "Video has no upload location")

            bucket, key = split_storage_path(video.raw_file_path)
            if not await self._storage.object_exists(bucket, key):
                UPLOADS_CONFIRMED_TOTAL.labels(result="rejected").inc()
                return Result.fail(ErrorCode.VALIDATION_ERROR, "Uploaded file not found in storage")

            video.status = VideoStatus.PROCESSING
            video.uploaded_at = utcnow()
            await self._videos.save(video)

            try:
                job_id = await self._encoding_queue.add_encoding_job(
                    EncodingJobData(video_id=video.id, raw_file_path=video.raw_file_path)
                )
            except Exception:
                # Back to uploading so the client can confirm again
                await self._videos.update(video_id, status=VideoStatus.UPLOADING, uploaded_at=None)
                raise
        except Exception:
            logger.exception(f"Failed to confirm upload of video {video_id}")
            return Result.fail(ErrorCode.INTERNAL_ERROR, "Failed to confirm upload")

        UPLOADS_CONFIRMED_TOTAL.labels(result="queued").inc()
        logger.info(f"Upload of video {video_id} confirmed, encoding job {job_id}")
        return Result.ok(
            {
                "video_id": video_id,
                "status": VideoStatus.PROCESSING.value,
                "job_id": job_id,
                "message": "Upload confirmed, encoding queued",
            }
        )
