"""Tests for the error taxonomy and message sanitization."""

import pytest

from api.errors import (
    Forbidden,
    InvalidIdentifier,
    LinkError,
    MalformedUpload,
    MediaAPIError,
    NotFound,
    PayloadTooLarge,
    PersistenceError,
    ProbeError,
    PublishError,
    TranscodeError,
    Unauthenticated,
    UnsupportedMediaType,
    sanitize_error_message,
    truncate_string,
)


class TestErrorStatusCodes:
    @pytest.mark.parametrize(
        "error_cls,status",
        [
            (InvalidIdentifier, 400),
            (MalformedUpload, 400),
            (UnsupportedMediaType, 400),
            (Unauthenticated, 401),
            (Forbidden, 403),
            (NotFound, 404),
            (PayloadTooLarge, 413),
            (ProbeError, 500),
            (TranscodeError, 500),
            (PublishError, 500),
            (PersistenceError, 500),
            (LinkError, 500),
        ],
    )
    def test_each_error_maps_to_one_status(self, error_cls, status):
        assert issubclass(error_cls, MediaAPIError)
        assert error_cls().status_code == status

    def test_default_message_used_when_none_given(self):
        assert str(NotFound()) == "Couldn't find video"

    def test_custom_message_and_cause(self):
        cause = ValueError("boom")
        error = PublishError("Couldn't upload file to S3", cause=cause)
        assert error.message == "Couldn't upload file to S3"
        assert error.cause is cause

    def test_custom_message_does_not_leak_to_class(self):
        PersistenceError("Couldn't get video")
        assert PersistenceError().message == "Couldn't update video"


class TestTruncateString:
    def test_none_passthrough(self):
        assert truncate_string(None, 10) is None

    def test_short_string_unchanged(self):
        assert truncate_string("short", 10) == "short"

    def test_long_string_truncated_with_ellipsis(self):
        result = truncate_string("x" * 50, 10)
        assert len(result) == 10
        assert result.endswith("...")


class TestSanitizeErrorMessage:
    def test_none_returns_none(self):
        assert sanitize_error_message(None) is None

    def test_ffmpeg_errors_become_generic(self):
        msg = sanitize_error_message("ffmpeg failed: /tmp/tubely-upload-abc/video.mp4: Invalid data")
        assert "/tmp" not in msg
        assert "processing failed" in msg.lower()

    def test_ffmpeg_timeout(self):
        msg = sanitize_error_message("ffmpeg: ffmpeg timed out after 600.0s")
        assert "timed out" in msg.lower()

    def test_ffprobe_errors(self):
        msg = sanitize_error_message("ffprobe failed: moov atom not found")
        assert "Could not read video file" in msg

    def test_database_errors(self):
        assert "database" in sanitize_error_message("sqlite3.OperationalError: locked").lower()

    def test_paths_are_hidden(self):
        msg = sanitize_error_message("open /home/alice/secret.txt")
        assert "/home" not in msg

    def test_short_safe_message_passes_through(self):
        assert sanitize_error_message("Video too short", log_original=False) == "Video too short"
