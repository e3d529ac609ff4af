"""
Centralized enums for values used throughout the application.
Using str-based enums so values serialize and compare as plain strings.
"""

from enum import Enum


class Orientation(str, Enum):
    """Coarse aspect-ratio category; also the storage key prefix for videos."""

    LANDSCAPE = "landscape"  # 16:9
    PORTRAIT = "portrait"  # 9:16
    OTHER = "other"


class StorageBackend(str, Enum):
    """Where published objects live."""

    LOCAL = "local"
    S3 = "s3"


class UploadKind(str, Enum):
    """Which locator an upload replaces."""

    THUMBNAIL = "thumbnail"
    VIDEO = "video"
