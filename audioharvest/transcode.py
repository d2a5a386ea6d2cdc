import logging
from pathlib import Path
from typing import Dict, List

from .errors import TranscodeError
from .models import Quality
from .process import last_line, run_tool

logger = logging.getLogger(__name__)

QUALITY_PROFILES: Dict[Quality, Dict[str, str]] = {
    Quality.STANDARD: {"bitrate": "128k", "vbr_quality": "4"},
    Quality.HIGH: {"bitrate": "192k", "vbr_quality": "2"},
}


def encode_args(quality: Quality) -> List[str]:
    """ffmpeg output options shared by the discrete and streaming paths."""
    profile = QUALITY_PROFILES[Quality(quality)]
    return [
        "-vn",
        "-sn",
        "-dn",
        "-map",
        "0:a:0",
        "-c:a",
        "libmp3lame",
        "-b:a",
        profile["bitrate"],
        "-ar",
        "44100",
        "-ac",
        "2",
        "-compression_level",
        "0",
        "-q:a",
        profile["vbr_quality"],
        "-write_xing",
        "0",
        "-id3v2_version",
        "0",
        "-f",
        "mp3",
    ]


def check_output(output_path: Path, min_output_bytes: int) -> int:
    try:
        size = output_path.stat().st_size
    except OSError:
        raise TranscodeError("ffmpeg did not produce an output file")
    if size < min_output_bytes:
        raise TranscodeError(
            f"ffmpeg output is too small ({size} bytes); the source may be truncated"
        )
    return size


async def transcode_to_mp3(
    input_path: Path,
    output_path: Path,
    quality: Quality,
    *,
    binary: str = "ffmpeg",
    timeout: float = 600.0,
    min_output_bytes: int = 4096,
) -> Path:
    input_path = Path(input_path)
    output_path = Path(output_path)
    if not input_path.exists():
        raise TranscodeError("The source file is not available for conversion")
    if input_path.stat().st_size == 0:
        raise TranscodeError("The source file is empty or corrupt")
    output_path.parent.mkdir(parents=True, exist_ok=True)

    command = [
        binary,
        "-threads",
        "0",
        "-i",
        str(input_path),
        *encode_args(quality),
        "-y",
        str(output_path),
    ]
    logger.info("Transcoding %s (%s quality)", input_path.name, Quality(quality).value)
    result = await run_tool(command, timeout=timeout)
    if result.returncode != 0:
        output_path.unlink(missing_ok=True)
        tail = last_line(result.stderr or result.stdout, "unknown ffmpeg error")
        raise TranscodeError(f"ffmpeg could not process the file: {tail}")
    try:
        check_output(output_path, min_output_bytes)
    except TranscodeError:
        output_path.unlink(missing_ok=True)
        raise
    return output_path
