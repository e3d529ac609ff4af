"""
Upload pipeline for thumbnails and videos.

Each upload runs strictly in order:

    parse ID -> authenticate -> load record -> check owner -> read form
    -> check media type -> [video: scratch copy -> probe -> fast-start]
    -> publish -> update record -> link for response

Any failure raises a MediaAPIError subclass and leaves the record untouched.
A failure after publish (record update) leaves the stored object orphaned;
nothing is compensated or retried.
"""

import logging
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional

from starlette.datastructures import UploadFile

from api.auth import TokenValidator, authenticate
from api.database import VideoStore
from api.enums import UploadKind
from api.errors import (
    Forbidden,
    InvalidIdentifier,
    NotFound,
    PayloadTooLarge,
    PersistenceError,
    PublishError,
    UnsupportedMediaType,
)
from api.links import RecordLinker
from api.storage import ObjectPublisher, generate_object_key
from config import THUMBNAIL_MEDIA_TYPES, VIDEO_MEDIA_TYPES, AppConfig
from media.faststart import FastStartRewriter
from media.probe import MediaProbe

logger = logging.getLogger(__name__)

THUMBNAIL_KEY_PREFIX = "thumbnails"
SCRATCH_PREFIX = "tubely-upload-"

# Parses the multipart form lazily so the body is only read after the caller
# has been authorized.
FormFileLoader = Callable[[], Awaitable[UploadFile]]


def parse_video_id(raw: str) -> str:
    """Return the canonical UUID string for `raw`, or raise InvalidIdentifier."""
    try:
        return str(uuid.UUID(raw))
    except (ValueError, AttributeError, TypeError) as e:
        raise InvalidIdentifier(cause=e) from e


def parse_media_type(content_type: Optional[str]) -> str:
    """Strip parameters from a Content-Type value and normalize its case."""
    return (content_type or "").split(";", 1)[0].strip().lower()


class UploadPipeline:
    def __init__(
        self,
        config: AppConfig,
        store: VideoStore,
        validator: TokenValidator,
        thumbnail_publisher: ObjectPublisher,
        video_publisher: ObjectPublisher,
        probe: MediaProbe,
        rewriter: FastStartRewriter,
        linker: RecordLinker,
    ):
        self.config = config
        self.store = store
        self.validator = validator
        self.thumbnail_publisher = thumbnail_publisher
        self.video_publisher = video_publisher
        self.probe = probe
        self.rewriter = rewriter
        self.linker = linker

    async def authorize(self, raw_video_id: str, headers: Mapping[str, str], request=None) -> dict:
        """Parse the ID, authenticate, load the record and check ownership.

        Also used by the record endpoints, which need the same owner-only access.
        """
        video_id = parse_video_id(raw_video_id)
        user_id = authenticate(headers, self.validator, request=request)

        try:
            video = await self.store.get(video_id)
        except Exception as e:
            raise PersistenceError("Couldn't get video", cause=e) from e
        if video is None:
            raise NotFound(cause=LookupError(f"video {video_id} does not exist"))

        if video["user_id"] != user_id:
            raise Forbidden(cause=PermissionError(f"user {user_id} does not own video {video_id}"))

        logger.info(f"Authorized access to video {video_id} by user {user_id}")
        return video

    async def _update(self, video: dict, kind: UploadKind, locator: str) -> dict:
        column = "thumbnail_url" if kind == UploadKind.THUMBNAIL else "video_url"
        updated = await self.store.update_locators(
            video["id"], datetime.now(timezone.utc), **{column: locator}
        )
        return self.linker.link(updated)

    async def upload_thumbnail(
        self,
        raw_video_id: str,
        headers: Mapping[str, str],
        load_file: FormFileLoader,
        request=None,
    ) -> dict:
        video = await self.authorize(raw_video_id, headers, request=request)

        upload = await load_file()
        try:
            media_type = parse_media_type(upload.content_type)
            extension = THUMBNAIL_MEDIA_TYPES.get(media_type)
            if extension is None:
                raise UnsupportedMediaType(
                    f"Invalid thumbnail media type. Allowed: {', '.join(sorted(THUMBNAIL_MEDIA_TYPES))}"
                )

            key = generate_object_key(THUMBNAIL_KEY_PREFIX, extension)
            await upload.seek(0)
            locator = await self.thumbnail_publisher.publish(key, upload.file, media_type)
        finally:
            await upload.close()

        return await self._update(video, UploadKind.THUMBNAIL, locator)

    async def _save_to_scratch(self, upload: UploadFile, path: Path) -> int:
        """Stream an upload into the scratch file, enforcing the video size limit."""
        max_size = self.config.max_video_upload_size
        total_size = 0
        with open(path, "wb") as f:
            while True:
                chunk = await upload.read(self.config.upload_chunk_size)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    raise PayloadTooLarge(
                        f"File too large. Maximum upload size is {max_size // (1024 * 1024)} MB"
                    )
                f.write(chunk)
        return total_size

    async def upload_video(
        self,
        raw_video_id: str,
        headers: Mapping[str, str],
        load_file: FormFileLoader,
        request=None,
    ) -> dict:
        video = await self.authorize(raw_video_id, headers, request=request)

        upload = await load_file()
        try:
            media_type = parse_media_type(upload.content_type)
            extension = VIDEO_MEDIA_TYPES.get(media_type)
            if extension is None:
                raise UnsupportedMediaType(
                    f"Invalid video media type. Allowed: {', '.join(sorted(VIDEO_MEDIA_TYPES))}"
                )

            try:
                scratch_dir = tempfile.TemporaryDirectory(prefix=SCRATCH_PREFIX, dir=self.config.scratch_root)
            except OSError as e:
                raise PublishError("Couldn't create temporary file", cause=e) from e

            # Everything derived from the upload lives in this directory and is
            # removed with it, whichever way this block exits.
            with scratch_dir as scratch:
                scratch_path = Path(scratch) / f"video-{video['id']}{extension}"
                try:
                    size = await self._save_to_scratch(upload, scratch_path)
                except OSError as e:
                    raise PublishError("Couldn't write temporary file", cause=e) from e
                logger.info(f"Saved {size} bytes for video {video['id']} to scratch")

                orientation = await self.probe.probe(scratch_path)
                processed_path = await self.rewriter.rewrite(scratch_path)

                key = generate_object_key(orientation.value, extension)
                try:
                    with open(processed_path, "rb") as source:
                        locator = await self.video_publisher.publish(key, source, media_type)
                except OSError as e:
                    raise PublishError("Couldn't open processed video file", cause=e) from e
        finally:
            await upload.close()

        return await self._update(video, UploadKind.VIDEO, locator)
