"""Helpers for running external media tools as async subprocesses."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)


class ToolTimeout(Exception):
    """Raised when an external tool does not finish within its timeout."""

    pass


class ToolMissing(Exception):
    """Raised when the tool binary cannot be executed at all."""

    pass


@dataclass
class ToolResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="ignore").strip()


async def cleanup_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """Kill a subprocess and reap it so it does not linger as a zombie."""
    if process.returncode is not None:
        return
    try:
        process.kill()
        await asyncio.wait_for(process.wait(), timeout=5.0)
    except ProcessLookupError:
        pass
    except asyncio.TimeoutError:
        logger.warning(f"{context} process did not exit after kill")


async def run_tool(cmd: Sequence[str], timeout: float) -> ToolResult:
    """
    Run a command, capturing stdout and stderr.

    Raises:
        ToolMissing: if the executable does not exist or is not executable
        ToolTimeout: if the command runs longer than `timeout` seconds
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except (FileNotFoundError, PermissionError) as e:
        raise ToolMissing(f"{cmd[0]} is not available: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await cleanup_process(process, context=cmd[0])
        raise ToolTimeout(f"{cmd[0]} timed out after {timeout}s")

    return ToolResult(returncode=process.returncode, stdout=stdout, stderr=stderr)
