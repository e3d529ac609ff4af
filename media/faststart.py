"""
Fast-start rewriting with ffmpeg.

Moves the MP4 index (moov atom) to the front of the container so playback can
begin before the whole file is downloaded. Streams are copied, not re-encoded.
"""

import logging
import shutil
from pathlib import Path
from typing import Protocol

from api.errors import TranscodeError, sanitize_error_message
from media.process import ToolMissing, ToolTimeout, run_tool

logger = logging.getLogger(__name__)

PROCESSED_SUFFIX = ".processing"


class FastStartRewriter(Protocol):
    async def rewrite(self, path: Path) -> Path:
        ...


class PassthroughRewriter:
    """Used when fast-start is disabled or ffmpeg is unavailable."""

    async def rewrite(self, path: Path) -> Path:
        return path


class FFmpegFastStartRewriter:
    """FastStartRewriter that writes `<name>.processing` beside the input."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 600.0):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    async def rewrite(self, path: Path) -> Path:
        """
        Produce a fast-start copy of `path`. The input is never modified.

        Raises:
            TranscodeError: If ffmpeg is missing, times out or exits non-zero
        """
        output_path = path.with_name(path.name + PROCESSED_SUFFIX)
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-i",
            str(path),
            "-c",
            "copy",
            "-movflags",
            "faststart",
            "-f",
            "mp4",
            str(output_path),
        ]

        try:
            result = await run_tool(cmd, timeout=self.timeout)
        except (ToolMissing, ToolTimeout) as e:
            output_path.unlink(missing_ok=True)
            raise TranscodeError(sanitize_error_message(f"ffmpeg: {e}", context=path.name), cause=e) from e

        if result.returncode != 0:
            output_path.unlink(missing_ok=True)
            raise TranscodeError(
                sanitize_error_message(f"ffmpeg failed: {result.stderr_text[-2000:]}", context=path.name),
                cause=RuntimeError(f"ffmpeg exited with code {result.returncode}"),
            )

        logger.info(f"Rewrote {path.name} for fast start")
        return output_path


def build_rewriter(enabled: bool, ffmpeg_path: str, timeout: float) -> FastStartRewriter:
    """Pick the rewriter for this process: ffmpeg when enabled and on PATH, else pass-through."""
    if not enabled:
        logger.info("Fast-start rewriting disabled; videos are published as uploaded")
        return PassthroughRewriter()
    if shutil.which(ffmpeg_path) is None:
        logger.warning(f"{ffmpeg_path} not found on PATH; videos are published without fast-start rewriting")
        return PassthroughRewriter()
    return FFmpegFastStartRewriter(ffmpeg_path=ffmpeg_path, timeout=timeout)
