"""Shared fakes for the test suite."""

from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from audioharvest.admission import AdmissionController
from audioharvest.cache import ResultCache
from audioharvest.errors import PipeError
from audioharvest.extraction import ExtractionEngine
from audioharvest.models import ConversionJob, Quality, Tier
from audioharvest.personas import PERSONAS
from audioharvest.process import ToolResult
from audioharvest.service import ConversionService

LIMITS = {"standard": 2, "premium": 4, "business": 6, "enterprise": 8}
WATCH_URL = "https://www.youtube.com/watch?v=abc12345678"

# (returncode, stderr, extension written next to the output template or None)
Outcome = Tuple[int, str, Optional[str]]


def write_tool(directory: Path, name: str, body: str) -> str:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def make_job(
    job_id: str = "job1",
    reference: str = WATCH_URL,
    *,
    quality: Quality = Quality.STANDARD,
    short_content: bool = False,
) -> ConversionJob:
    return ConversionJob(
        job_id=job_id,
        source_reference=reference,
        caller_tier=Tier.STANDARD,
        normalized_key="0" * 40,
        requested_quality=quality,
        short_content=short_content,
    )


class ScriptedRunner:
    """Replays canned yt-dlp results and records every command line."""

    def __init__(self, outcomes: Sequence[Outcome]) -> None:
        self.outcomes: List[Outcome] = list(outcomes)
        self.commands: List[List[str]] = []

    async def __call__(self, command, *, timeout, cwd=None) -> ToolResult:
        self.commands.append(list(command))
        returncode, stderr, extension = self.outcomes.pop(0)
        if extension:
            template = command[command.index("--output") + 1]
            Path(template.replace("%(ext)s", extension)).write_bytes(b"\x00" * 8192)
        return ToolResult(returncode=returncode, stdout="", stderr=stderr)


class FakeStreamer:
    """Stands in for ``StreamingTranscoder``; writes ``payload`` or raises ``error``."""

    def __init__(
        self,
        scratch_dir: Path,
        *,
        payload: bytes = b"\xff" * 6000,
        error: Optional[PipeError] = None,
        delay: float = 0.0,
    ) -> None:
        self.scratch_dir = Path(scratch_dir)
        self.payload = payload
        self.error = error
        self.delay = delay
        self.calls: List[Tuple[str, str]] = []

    async def stream_convert(self, job: ConversionJob, persona) -> Path:
        self.calls.append((job.source_reference, persona.name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        output = self.scratch_dir / f"ahs_{job.job_id}-stream.mp3"
        output.write_bytes(self.payload)
        return output


async def copy_transcode(source, output, quality, *, binary, timeout, min_output_bytes):
    Path(output).parent.mkdir(parents=True, exist_ok=True)
    Path(output).write_bytes(Path(source).read_bytes())
    return Path(output)


def build_service(
    tmp_path: Path,
    *,
    streamer: Optional[FakeStreamer] = None,
    runner: Optional[ScriptedRunner] = None,
    personas: Sequence[str] = ("browser", "android"),
    limits=None,
    max_upload_bytes: int = 500 * 1024 * 1024,
) -> ConversionService:
    engine = ExtractionEngine(
        [PERSONAS[name] for name in personas],
        scratch_dir=tmp_path / "scratch",
        probe_enabled=False,
        runner=runner or ScriptedRunner([]),
    )
    return ConversionService(
        admission=AdmissionController(limits or LIMITS),
        cache=ResultCache(tmp_path / "cache"),
        engine=engine,
        streamer=streamer,
        streaming_enabled=streamer is not None,
        max_upload_bytes=max_upload_bytes,
    )
