#!/usr/bin/env python3
"""
Tubely CLI - create video records and upload their media.
"""

import argparse
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

import httpx
from rich.console import Console
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from api.auth import TokenValidator
from api.errors import truncate_string
from config import MAX_THUMBNAIL_UPLOAD_SIZE, MAX_VIDEO_UPLOAD_SIZE, ConfigError, load_config

ERROR_DETAIL_MAX_LENGTH = 500

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("TUBELY_API_TIMEOUT", "30"))

# Very long timeout for large uploads, but not infinite to prevent hanging
UPLOAD_TIMEOUT = int(os.getenv("TUBELY_UPLOAD_TIMEOUT", "7200"))

API_BASE = os.getenv("TUBELY_API_URL", "http://localhost:8091").rstrip("/") + "/api"

UPLOAD_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".mp4": "video/mp4",
}

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, raising CLIError for error statuses or bad bodies.
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, AttributeError):
            detail = truncate_string(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    if response.status_code == 204:
        return None
    try:
        return response.json()
    except ValueError:
        raise CLIError(f"Invalid JSON response: {truncate_string(response.text, ERROR_DETAIL_MAX_LENGTH)}")


def validate_file(file_path: Path, max_size: int) -> int:
    """
    Validate file exists, is readable, non-empty and under `max_size`.

    Returns:
        int: File size in bytes
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    if file_size > max_size:
        raise CLIError(
            f"File too large ({file_size / (1024 * 1024):.1f} MB). "
            f"Maximum upload size is {max_size // (1024 * 1024)} MB"
        )
    return file_size


def guess_content_type(file_path: Path) -> str:
    content_type = UPLOAD_CONTENT_TYPES.get(file_path.suffix.lower())
    if content_type is None:
        raise CLIError(
            f"Unsupported file extension '{file_path.suffix}'. "
            f"Allowed: {', '.join(sorted(UPLOAD_CONTENT_TYPES))}"
        )
    return content_type


def get_auth_headers(args) -> dict:
    token = args.token or os.getenv("TUBELY_TOKEN")
    if not token:
        raise CLIError("No access token. Pass --token or set TUBELY_TOKEN (see 'tubely token').")
    return {"Authorization": f"Bearer {token}"}


def run_command(func, args):
    """Run a subcommand, turning connection and API failures into exit code 1."""
    try:
        func(args)
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to API at {API_BASE}")
        console.print("Make sure the server is running ('tubely serve').")
        sys.exit(1)
    except httpx.TimeoutException:
        console.print(f"[red]Error:[/red] Request to {API_BASE} timed out")
        sys.exit(1)
    except (CLIError, ConfigError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    from api.app import create_app

    config = load_config()
    logging.getLogger().setLevel(config.log_level)
    uvicorn.run(create_app(config), host=args.host, port=args.port or config.port)


def cmd_token(args):
    """Mint an access token for a user with the configured secret."""
    config = load_config().validate()
    validator = TokenValidator(config.jwt_secret)
    token = validator.issue(args.user_id, expires_in=timedelta(minutes=args.expires_minutes))
    print(token)


def cmd_create(args):
    """Create an empty video record."""
    response = httpx.post(
        f"{API_BASE}/videos",
        json={"title": args.title, "description": args.description or ""},
        headers=get_auth_headers(args),
        timeout=DEFAULT_API_TIMEOUT,
    )
    video = safe_json_response(response)
    console.print(f"Created video [bold]{video['title']}[/bold]")
    console.print(f"  ID: {video['id']}")


def cmd_list(args):
    """List the caller's videos."""
    response = httpx.get(f"{API_BASE}/videos", headers=get_auth_headers(args), timeout=DEFAULT_API_TIMEOUT)
    videos_list = safe_json_response(response)

    if not videos_list:
        console.print("No videos found.")
        return

    table = Table("ID", "Title", "Thumbnail", "Video")
    for v in videos_list:
        table.add_row(
            v["id"],
            truncate_string(v["title"], 40),
            "yes" if v.get("thumbnail_url") else "-",
            "yes" if v.get("video_url") else "-",
        )
    console.print(table)


def cmd_delete(args):
    """Delete a video record."""
    response = httpx.delete(
        f"{API_BASE}/videos/{args.video_id}", headers=get_auth_headers(args), timeout=DEFAULT_API_TIMEOUT
    )
    safe_json_response(response)
    console.print(f"Video {args.video_id} deleted.")


def upload_media(args, endpoint: str, field: str, max_size: int) -> dict:
    """POST one file as multipart form field `field`, showing progress."""
    file_path = Path(args.file)
    file_size = validate_file(file_path, max_size)
    content_type = guess_content_type(file_path)
    headers = get_auth_headers(args)

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        FileSizeColumn(),
        TextColumn("/"),
        TotalFileSizeColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task(f"Uploading {file_path.name}", total=file_size)
        with open(file_path, "rb") as f:
            wrapped_file = ProgressFileWrapper(f, progress, task_id)
            files = {field: (file_path.name, wrapped_file, content_type)}
            with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                response = client.post(f"{API_BASE}/{endpoint}/{args.video_id}", files=files, headers=headers)

    return safe_json_response(response)


def cmd_upload_thumbnail(args):
    """Upload a JPEG or PNG thumbnail for a video."""
    video = upload_media(args, "thumbnail_upload", "thumbnail", MAX_THUMBNAIL_UPLOAD_SIZE)
    console.print("Thumbnail updated.")
    console.print(f"  URL: {video['thumbnail_url']}")


def cmd_upload_video(args):
    """Upload an MP4 file for a video."""
    video = upload_media(args, "video_upload", "video", MAX_VIDEO_UPLOAD_SIZE)
    console.print("Video updated.")
    console.print(f"  URL: {video['video_url']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tubely", description="Tubely CLI - manage video uploads")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_token_option(sub):
        sub.add_argument("--token", help="Access token (default: $TUBELY_TOKEN)")

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port (default: TUBELY_PORT or 8091)")
    serve_parser.set_defaults(func=cmd_serve)

    token_parser = subparsers.add_parser("token", help="Issue an access token for a user ID")
    token_parser.add_argument("user_id", help="User ID (UUID)")
    token_parser.add_argument(
        "--expires-minutes", type=int, default=60, help="Token lifetime in minutes (default: 60)"
    )
    token_parser.set_defaults(func=cmd_token)

    create_parser = subparsers.add_parser("create", help="Create a video record")
    create_parser.add_argument("title", help="Video title")
    create_parser.add_argument("-d", "--description", help="Video description")
    add_token_option(create_parser)
    create_parser.set_defaults(func=cmd_create)

    list_parser = subparsers.add_parser("list", help="List your videos")
    add_token_option(list_parser)
    list_parser.set_defaults(func=cmd_list)

    del_parser = subparsers.add_parser("delete", help="Delete a video record")
    del_parser.add_argument("video_id", help="Video ID to delete")
    add_token_option(del_parser)
    del_parser.set_defaults(func=cmd_delete)

    thumb_parser = subparsers.add_parser("upload-thumbnail", help="Upload a thumbnail image")
    thumb_parser.add_argument("video_id", help="Video ID")
    thumb_parser.add_argument("file", help="JPEG or PNG file")
    add_token_option(thumb_parser)
    thumb_parser.set_defaults(func=cmd_upload_thumbnail)

    video_parser = subparsers.add_parser("upload-video", help="Upload an MP4 video file")
    video_parser.add_argument("video_id", help="Video ID")
    video_parser.add_argument("file", help="MP4 file")
    add_token_option(video_parser)
    video_parser.set_defaults(func=cmd_upload_video)

    return parser


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args()
    run_command(args.func, args)


if __name__ == "__main__":
    main()
