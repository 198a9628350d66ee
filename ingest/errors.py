"""
Error codes, exceptions and error-message helpers.

Use cases report failures as ``ErrorCode`` values inside a ``Result``; the
repository, queue and storage layers raise the exceptions defined here and the
worker harness records them onto the relevant row.

Error text persisted on video and quality rows is sanitized first so internal
paths and driver details are never shown to uploaders.
"""

import logging
import re
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Failure codes returned by use cases."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_INACTIVE = "USER_INACTIVE"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    CLEANUP_ERROR = "CLEANUP_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class RecordNotFoundError(Exception):
    """Raised when an update targets a row that does not exist."""

    pass


class NoFieldsToUpdateError(ValueError):
    """Raised when an update is requested with nothing to change."""

    pass


class JobNotFoundError(Exception):
    """Raised when a queue operation references an unknown job id."""

    pass


class InvalidJobStateError(Exception):
    """Raised when a queue operation is not allowed in the job's current state."""

    pass


class StorageError(Exception):
    """Raised when an object storage operation fails."""

    pass


class EncodingRejectedError(Exception):
    """Raised when a source file can never be encoded (too long, no video stream).

    Unlike transient failures these are not redelivered by the queue.
    """

    pass


class EncodingCancelledError(Exception):
    """Raised when the video was deleted or cancelled while its job was running."""

    pass


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'Permission denied',
    r'No such file or directory',
    r'UNIQUE constraint failed',
    r'sqlite3?\.',
    r'botocore',             # S3 client internals
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "ffmpeg": "Video processing failed. The quality will be retried automatically.",
    "ffprobe": "Could not read video file. The file may be corrupted or in an unsupported format.",
    "timeout": "Video processing timed out.",
    "no_video_stream": "No video stream found. Please upload a valid video file.",
    "duration": "Video exceeds the maximum allowed duration.",
    "storage": "A storage error occurred while processing the video.",
    "database": "A database error occurred. Please try again.",
    "general": "An error occurred while processing the video.",
}


def truncate_error(message: Optional[str], max_length: int) -> str:
    """Truncate an error message to ``max_length`` characters, adding an ellipsis marker."""
    if not message:
        return ""
    message = message.strip()
    if len(message) <= max_length:
        return message
    return message[: max(0, max_length - 3)] + "..."


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message before storing it where uploaders can see it.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "video_id=abc")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "timeout" in error_lower or "timed out" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "ffprobe" in error_lower:
        return ERROR_MESSAGES["ffprobe"]

    if "no video stream" in error_lower:
        return ERROR_MESSAGES["no_video_stream"]

    if "maximum duration" in error_lower:
        return ERROR_MESSAGES["duration"]

    if "ffmpeg" in error_lower or "encode" in error_lower:
        return ERROR_MESSAGES["ffmpeg"]

    if "s3" in error_lower or "bucket" in error_lower or "storage" in error_lower:
        return ERROR_MESSAGES["storage"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are safe to show as-is
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
