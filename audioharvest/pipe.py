"""
Streaming extract-to-transcode pipe.

yt-dlp writes the media to stdout, the bytes are pumped straight into
ffmpeg's stdin and ffmpeg writes the final artifact, so nothing is staged on
disk in between. Two watchdogs guard every session: an inactivity timer that
any observed byte resets, and a total-duration timer that nothing resets.
Either firing, or either process failing, terminates both processes.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import PipeError, PipeTimeoutError, TranscodeError
from .extraction import ExtractionEngine
from .models import ConversionJob, Quality
from .personas import Persona
from .process import kill_process, last_line, spawn
from .transcode import check_output, encode_args

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
STDERR_TAIL_BYTES = 16 * 1024
# Seconds the extractor may take to exit once ffmpeg has finished cleanly.
EXTRACTOR_GRACE = 5.0
# Seconds to let the stream readers reach EOF after both processes exited.
DRAIN_GRACE = 5.0


class Watchdog:
    """One-shot timer; ``reset`` restarts the countdown until it has fired."""

    def __init__(self, timeout: float, on_expire: Callable[[], None]) -> None:
        self.timeout = timeout
        self.expired = False
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._schedule()

    def reset(self) -> None:
        if self._handle is None or self.expired:
            return
        self._handle.cancel()
        self._schedule()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self) -> None:
        assert self._loop is not None
        self._handle = self._loop.call_later(self.timeout, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.expired = True
        self._on_expire()


@dataclass
class PipeProgress:
    out_time_seconds: float = 0.0
    total_size: int = 0
    speed: Optional[str] = None
    finished: bool = False

    def update(self, line: str) -> None:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return
        value = value.strip()
        try:
            # ffmpeg reports microseconds under both names.
            if key in {"out_time_us", "out_time_ms"}:
                self.out_time_seconds = int(value) / 1_000_000
            elif key == "total_size":
                self.total_size = int(value)
        except ValueError:
            return
        if key == "speed":
            self.speed = value
        elif key == "progress":
            self.finished = value == "end"


class _Tail:
    def __init__(self, limit: int = STDERR_TAIL_BYTES) -> None:
        self._limit = limit
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self._buffer += data
        if len(self._buffer) > self._limit:
            del self._buffer[: len(self._buffer) - self._limit]

    def text(self) -> str:
        return self._buffer.decode("utf-8", errors="ignore")


class PipeSession:
    def __init__(
        self,
        extract_command: Sequence[str],
        transcode_command: Sequence[str],
        output_path: Path,
        *,
        inactivity_timeout: float,
        total_timeout: float,
        min_output_bytes: int,
    ) -> None:
        self.extract_command = list(extract_command)
        self.transcode_command = list(transcode_command)
        self.output_path = Path(output_path)
        self.min_output_bytes = min_output_bytes
        self.extractor: Optional[asyncio.subprocess.Process] = None
        self.transcoder: Optional[asyncio.subprocess.Process] = None
        self.progress = PipeProgress()
        self.bytes_transferred = 0
        self.timeout_reason: Optional[str] = None
        self._extractor_killed = False
        self._extract_stderr = _Tail()
        self._transcode_stderr = _Tail()
        self._inactivity = Watchdog(inactivity_timeout, lambda: self._expire("inactivity"))
        self._total = Watchdog(total_timeout, lambda: self._expire("total"))

    @property
    def extract_stderr(self) -> str:
        return self._extract_stderr.text()

    @property
    def transcode_stderr(self) -> str:
        return self._transcode_stderr.text()

    def _touch(self) -> None:
        self._inactivity.reset()

    def _expire(self, reason: str) -> None:
        if self.timeout_reason is None:
            self.timeout_reason = reason
            logger.warning("Pipe %s watchdog fired, terminating both processes", reason)
        self._terminate()

    def _terminate(self) -> None:
        for process in (self.extractor, self.transcoder):
            if process is not None:
                kill_process(process)

    async def _pump(self) -> None:
        assert self.extractor and self.transcoder
        reader = self.extractor.stdout
        writer = self.transcoder.stdin
        assert reader is not None and writer is not None
        try:
            while True:
                chunk = await reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                self._touch()
                self.bytes_transferred += len(chunk)
                writer.write(chunk)
                await writer.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Transcoder closed its input early")
        finally:
            try:
                writer.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _drain(self, stream: Optional[asyncio.StreamReader], tail: _Tail) -> None:
        if stream is None:
            return
        while True:
            data = await stream.read(4096)
            if not data:
                return
            self._touch()
            tail.feed(data)

    async def _read_progress(self) -> None:
        assert self.transcoder and self.transcoder.stdout
        while True:
            line = await self.transcoder.stdout.readline()
            if not line:
                return
            self._touch()
            self.progress.update(line.decode("utf-8", errors="ignore"))

    async def run(self) -> Path:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self.output_path.unlink(missing_ok=True)
        tasks: List["asyncio.Task[None]"] = []
        try:
            self.extractor = await spawn(
                self.extract_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            self.transcoder = await spawn(
                self.transcode_command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            self._inactivity.start()
            self._total.start()
            tasks = [
                asyncio.ensure_future(self._pump()),
                asyncio.ensure_future(self._drain(self.extractor.stderr, self._extract_stderr)),
                asyncio.ensure_future(self._drain(self.transcoder.stderr, self._transcode_stderr)),
                asyncio.ensure_future(self._read_progress()),
            ]

            transcode_code = await self.transcoder.wait()
            if transcode_code != 0 or self.timeout_reason:
                self._extractor_killed = self.extractor.returncode is None
                kill_process(self.extractor)
            try:
                extract_code = await asyncio.wait_for(self.extractor.wait(), timeout=EXTRACTOR_GRACE)
            except asyncio.TimeoutError:
                kill_process(self.extractor)
                extract_code = await self.extractor.wait()
            await asyncio.wait(tasks, timeout=DRAIN_GRACE)

            self._check(transcode_code, extract_code)
            logger.info(
                "Pipe finished: %d bytes in, %.1fs of audio", self.bytes_transferred, self.progress.out_time_seconds
            )
            return self.output_path
        except BaseException:
            self.output_path.unlink(missing_ok=True)
            raise
        finally:
            self._inactivity.cancel()
            self._total.cancel()
            self._terminate()
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            for process in (self.extractor, self.transcoder):
                if process is not None and process.returncode is None:
                    await process.wait()

    def _check(self, transcode_code: int, extract_code: int) -> None:
        if self.timeout_reason:
            raise PipeTimeoutError(
                f"Streaming conversion stalled ({self.timeout_reason} timeout)",
                reason=self.timeout_reason,
                stderr=self.extract_stderr,
            )
        if extract_code != 0 and not self._extractor_killed:
            raise PipeError(
                f"Extraction exited with code {extract_code}: "
                f"{last_line(self.extract_stderr, 'no diagnostic output')}",
                stderr=self.extract_stderr,
            )
        if transcode_code != 0:
            raise PipeError(
                f"Transcoder exited with code {transcode_code}: "
                f"{last_line(self.transcode_stderr, 'no diagnostic output')}",
                stderr=self.transcode_stderr,
            )
        try:
            check_output(self.output_path, self.min_output_bytes)
        except TranscodeError as exc:
            raise PipeError(exc.user_message, stderr=self.transcode_stderr) from exc


class StreamingTranscoder:
    def __init__(
        self,
        engine: ExtractionEngine,
        *,
        ffmpeg_binary: str = "ffmpeg",
        inactivity_timeout: float = 45.0,
        total_timeout: float = 600.0,
        min_output_bytes: int = 4096,
    ) -> None:
        self.engine = engine
        self.ffmpeg_binary = ffmpeg_binary
        self.inactivity_timeout = inactivity_timeout
        self.total_timeout = total_timeout
        self.min_output_bytes = min_output_bytes

    def output_path_for(self, job: ConversionJob) -> Path:
        # Outside the engine's "ahs_<id>." prefix so partial cleanup leaves it alone.
        return self.engine.scratch_dir / f"ahs_{job.job_id}-stream.mp3"

    def transcode_command(self, output_path: Path, quality: Quality) -> List[str]:
        return [
            self.ffmpeg_binary,
            "-hide_banner",
            "-progress",
            "pipe:1",
            "-nostats",
            "-i",
            "pipe:0",
            *encode_args(quality),
            "-y",
            str(output_path),
        ]

    def session_for(self, job: ConversionJob, persona: Persona) -> PipeSession:
        output_path = self.output_path_for(job)
        extract_command = self.engine.command_for(
            persona, job, self.engine.default_options(persona, job), output="-"
        )
        return PipeSession(
            extract_command,
            self.transcode_command(output_path, job.requested_quality),
            output_path,
            inactivity_timeout=self.inactivity_timeout,
            total_timeout=self.total_timeout,
            min_output_bytes=self.min_output_bytes,
        )

    async def stream_convert(self, job: ConversionJob, persona: Persona) -> Path:
        logger.info("Streaming %s with persona %s", job.source_reference, persona.name)
        return await self.session_for(job, persona).run()
