"""Turn stored locators into URLs a client can fetch."""

import logging
from typing import Any, Optional

from api.errors import LinkError
from api.storage import split_composite_locator

logger = logging.getLogger(__name__)

LINKED_FIELDS = ("thumbnail_url", "video_url")


class RecordLinker:
    """
    Presigns composite `bucket,key` locators for responses.

    Works on a copy of the record; the signed URL is never written back.
    """

    def __init__(self, s3_client: Optional[Any] = None, expires_in: int = 3600):
        self.s3_client = s3_client
        self.expires_in = expires_in

    def presign(self, bucket: str, key: str) -> str:
        if self.s3_client is None:
            raise LinkError(cause=RuntimeError(f"No S3 client configured to presign {bucket},{key}"))
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=self.expires_in,
            )
        except Exception as e:
            raise LinkError("Couldn't generate presigned video URL", cause=e) from e

    def link(self, record: dict) -> dict:
        linked = dict(record)
        for field in LINKED_FIELDS:
            parts = split_composite_locator(linked.get(field))
            if parts is not None:
                linked[field] = self.presign(*parts)
        return linked
