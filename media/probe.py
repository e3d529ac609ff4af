"""
Video metadata probing with ffprobe.

Only the display aspect ratio of the first video stream is used; it decides
which orientation prefix a published video is stored under.
"""

import json
import logging
from pathlib import Path
from typing import Protocol

from api.enums import Orientation
from api.errors import ProbeError, sanitize_error_message
from media.process import ToolMissing, ToolTimeout, run_tool

logger = logging.getLogger(__name__)

ASPECT_RATIO_ORIENTATIONS = {
    "16:9": Orientation.LANDSCAPE,
    "9:16": Orientation.PORTRAIT,
}


def classify_aspect_ratio(ratio: str) -> Orientation:
    """Map an ffprobe display_aspect_ratio string to an Orientation."""
    return ASPECT_RATIO_ORIENTATIONS.get((ratio or "").strip(), Orientation.OTHER)


class MediaProbe(Protocol):
    async def probe(self, path: Path) -> Orientation:
        ...


class FFprobeMediaProbe:
    """MediaProbe backed by the ffprobe command-line tool."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    async def get_display_aspect_ratio(self, path: Path) -> str:
        """Return the first video stream's display_aspect_ratio, verbatim.

        Raises:
            ProbeError: If ffprobe is missing, times out, fails, prints
                unparseable output, or reports no streams
        """
        cmd = [
            self.ffprobe_path,
            "-v",
            "error",
            "-select_streams",
            "v:0",
            "-print_format",
            "json",
            "-show_streams",
            str(path),
        ]

        try:
            result = await run_tool(cmd, timeout=self.timeout)
        except (ToolMissing, ToolTimeout) as e:
            raise ProbeError(sanitize_error_message(f"ffprobe: {e}", context=path.name), cause=e) from e

        if result.returncode != 0:
            raise ProbeError(
                sanitize_error_message(f"ffprobe failed: {result.stderr_text}", context=path.name),
                cause=RuntimeError(f"ffprobe exited with code {result.returncode}"),
            )

        try:
            data = json.loads(result.stdout.decode("utf-8", errors="ignore"))
            streams = data.get("streams") or []
        except (ValueError, AttributeError) as e:
            raise ProbeError(cause=e) from e

        if not streams:
            raise ProbeError("No video stream found. Please upload a valid video file.")

        return str(streams[0].get("display_aspect_ratio", ""))

    async def probe(self, path: Path) -> Orientation:
        ratio = await self.get_display_aspect_ratio(path)
        orientation = classify_aspect_ratio(ratio)
        logger.info(f"Probed {path.name}: display_aspect_ratio={ratio!r} -> {orientation.value}")
        return orientation
