import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from .errors import ToolMissingError

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


def decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="ignore")


def last_line(text: str, fallback: str = "") -> str:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    return lines[-1] if lines else fallback


def kill_process(process: "asyncio.subprocess.Process") -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


async def spawn(
    command: Sequence[str], **kwargs
) -> "asyncio.subprocess.Process":
    try:
        return await asyncio.create_subprocess_exec(*command, **kwargs)
    except FileNotFoundError as exc:
        raise ToolMissingError(
            f"{Path(command[0]).name} is not installed or not accessible on this system"
        ) from exc


async def run_tool(
    command: Sequence[str],
    *,
    timeout: float,
    cwd: Optional[Union[str, Path]] = None,
) -> ToolResult:
    """Run a command to completion, killing it once ``timeout`` elapses."""
    process = await spawn(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        kill_process(process)
        await process.wait()
        logger.warning("%s timed out after %.0fs", Path(command[0]).name, timeout)
        return ToolResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout="",
            stderr=f"{Path(command[0]).name} timed out after {timeout:.0f}s",
            timed_out=True,
        )
    except asyncio.CancelledError:
        kill_process(process)
        raise
    return ToolResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=decode(stdout),
        stderr=decode(stderr),
    )
