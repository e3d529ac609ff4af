"""
Error taxonomy and helpers for sanitizing error messages.

Every failure of an upload is terminal for its request. Each error type maps
to exactly one HTTP status and a short public message; the underlying cause is
logged but never echoed to the client.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# Anything matching these is treated as leaking server internals
LEAKY_PATTERNS = [
    re.compile(r"(/home|/tmp|/var|/root|/private)/\S+"),
    re.compile(r"tubely-upload-\w+"),  # scratch directories
    re.compile(r'File "[^"]+\.py", line \d+'),
    re.compile(r"No such file or directory|Permission denied", re.IGNORECASE),
    re.compile(r"s3://\S+|X-Amz-\w+", re.IGNORECASE),
]

# First matching rule wins: (substrings to look for, public message)
PUBLIC_MESSAGE_RULES = [
    (("timed out", "timeout"), "Video processing timed out. Please try again."),
    (("ffprobe",), "Could not read video file. The file may be corrupted or in an unsupported format."),
    (("ffmpeg", "faststart"), "Video processing failed. Please try uploading again."),
    (("sqlite", "database", "constraint"), "A database error occurred. Please try again."),
    (("permission",), "A file access error occurred. Please contact support."),
]
GENERIC_PUBLIC_MESSAGE = "An error occurred while processing your request. Please try again."

SAFE_MESSAGE_MAX_LENGTH = 100


class MediaAPIError(Exception):
    """Base class for errors that terminate a request with a known status."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        self.message = message or self.message
        self.cause = cause
        super().__init__(self.message)


class InvalidIdentifier(MediaAPIError):
    status_code = 400
    message = "Invalid ID"


class MalformedUpload(MediaAPIError):
    status_code = 400
    message = "Couldn't parse multipart form"


class UnsupportedMediaType(MediaAPIError):
    status_code = 400
    message = "Unsupported media type"


class Unauthenticated(MediaAPIError):
    status_code = 401
    message = "Couldn't validate JWT"


class Forbidden(MediaAPIError):
    status_code = 403
    message = "You don't own this video"


class NotFound(MediaAPIError):
    status_code = 404
    message = "Couldn't find video"


class PayloadTooLarge(MediaAPIError):
    status_code = 413
    message = "Upload too large"


class ProbeError(MediaAPIError):
    status_code = 500
    message = "Couldn't read video metadata"


class TranscodeError(MediaAPIError):
    status_code = 500
    message = "Couldn't process video for fast start"


class PublishError(MediaAPIError):
    status_code = 500
    message = "Couldn't store uploaded file"


class PersistenceError(MediaAPIError):
    status_code = 500
    message = "Couldn't update video"


class LinkError(MediaAPIError):
    status_code = 500
    message = "Couldn't generate video URL"


def truncate_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate a string to max_length, marking the cut with an ellipsis."""
    if value is None or len(value) <= max_length:
        return value
    return value[: max(max_length - 3, 0)] + "..."


def sanitize_error_message(error: Optional[str], log_original: bool = True, context: str = "") -> Optional[str]:
    """
    Turn a tool or library error into a message that is safe to show a client.

    The original is logged (with `context`, e.g. the scratch file name) so the
    detail is still available to operators.
    """
    if error is None:
        return None

    if log_original and error:
        suffix = f" ({context})" if context else ""
        logger.warning(f"Original error{suffix}: {error}")

    lowered = error.lower()
    for needles, message in PUBLIC_MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return message

    if any(pattern.search(error) for pattern in LEAKY_PATTERNS):
        return GENERIC_PUBLIC_MESSAGE

    if len(error) < SAFE_MESSAGE_MAX_LENGTH and "/" not in error and "\\" not in error:
        return error
    return GENERIC_PUBLIC_MESSAGE
