"""Tests for the tubely CLI helpers and subcommands."""

import uuid
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest

from api.auth import TokenValidator
from cli.main import (
    CLIError,
    ProgressFileWrapper,
    build_parser,
    cmd_token,
    cmd_upload_thumbnail,
    get_auth_headers,
    guess_content_type,
    safe_json_response,
    validate_file,
)


class TestSafeJsonResponse:
    def test_success(self):
        response = httpx.Response(200, json={"id": "abc"})
        assert safe_json_response(response) == {"id": "abc"}

    def test_no_content(self):
        assert safe_json_response(httpx.Response(204)) is None

    def test_error_uses_detail(self):
        response = httpx.Response(403, json={"detail": "You don't own this video"})
        with pytest.raises(CLIError, match=r"API error \(403\): You don't own this video"):
            safe_json_response(response)

    def test_error_without_json(self):
        response = httpx.Response(502, text="Bad Gateway")
        with pytest.raises(CLIError, match="Bad Gateway"):
            safe_json_response(response)

    def test_invalid_json_on_success(self):
        with pytest.raises(CLIError, match="Invalid JSON"):
            safe_json_response(httpx.Response(200, text="<html>"))


class TestValidateFile:
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(CLIError, match="File not found"):
            validate_file(tmp_path / "nope.png", 100)

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.png"
        path.touch()
        with pytest.raises(CLIError, match="File is empty"):
            validate_file(path, 100)

    def test_too_large(self, tmp_path: Path):
        path = tmp_path / "big.png"
        path.write_bytes(b"x" * 200)
        with pytest.raises(CLIError, match="File too large"):
            validate_file(path, 100)

    def test_returns_size(self, tmp_path: Path):
        path = tmp_path / "ok.png"
        path.write_bytes(b"x" * 50)
        assert validate_file(path, 100) == 50


class TestGuessContentType:
    @pytest.mark.parametrize(
        "name,expected",
        [("a.JPG", "image/jpeg"), ("a.jpeg", "image/jpeg"), ("a.png", "image/png"), ("a.mp4", "video/mp4")],
    )
    def test_known(self, name, expected):
        assert guess_content_type(Path(name)) == expected

    def test_unknown(self):
        with pytest.raises(CLIError, match="Unsupported file extension"):
            guess_content_type(Path("a.gif"))


class TestProgressFileWrapper:
    def test_advances_on_read(self, tmp_path: Path):
        path = tmp_path / "f.bin"
        path.write_bytes(b"0123456789")
        progress = MagicMock()
        with open(path, "rb") as f:
            wrapper = ProgressFileWrapper(f, progress, task_id=1)
            assert wrapper.read(4) == b"0123"
            assert wrapper.read() == b"456789"
            assert wrapper.read() == b""
        assert [c.kwargs["advance"] for c in progress.update.call_args_list] == [4, 6]


class TestAuthHeaders:
    def test_token_argument(self):
        assert get_auth_headers(SimpleNamespace(token="abc")) == {"Authorization": "Bearer abc"}

    def test_token_from_env(self, monkeypatch):
        monkeypatch.setenv("TUBELY_TOKEN", "from-env")
        assert get_auth_headers(SimpleNamespace(token=None)) == {"Authorization": "Bearer from-env"}

    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("TUBELY_TOKEN", raising=False)
        with pytest.raises(CLIError, match="No access token"):
            get_auth_headers(SimpleNamespace(token=None))


class TestCommands:
    def test_parser_subcommands(self):
        parser = build_parser()
        args = parser.parse_args(["upload-video", "vid", "clip.mp4", "--token", "t"])
        assert args.func.__name__ == "cmd_upload_video"
        assert args.video_id == "vid"
        assert args.file == "clip.mp4"

    def test_token_command_prints_valid_token(self, monkeypatch, capsys):
        monkeypatch.setenv("TUBELY_JWT_SECRET", "cli-secret")
        user_id = str(uuid.uuid4())

        cmd_token(SimpleNamespace(user_id=user_id, expires_minutes=5))

        token = capsys.readouterr().out.strip()
        assert TokenValidator("cli-secret").validate(token) == user_id

    def test_upload_thumbnail_posts_multipart(self, tmp_path: Path):
        path = tmp_path / "thumb.png"
        path.write_bytes(b"\x89PNGdata")
        response = httpx.Response(
            200, json={"id": "v", "thumbnail_url": "http://localhost:8091/assets/thumbnails/a.png"}
        )

        with patch("cli.main.httpx.Client") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.post.return_value = response
            cmd_upload_thumbnail(SimpleNamespace(video_id="v", file=str(path), token="tok"))

        url = client.post.call_args.args[0]
        assert url.endswith("/api/thumbnail_upload/v")
        kwargs = client.post.call_args.kwargs
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}
        name, _, content_type = kwargs["files"]["thumbnail"]
        assert name == "thumb.png"
        assert content_type == "image/png"
