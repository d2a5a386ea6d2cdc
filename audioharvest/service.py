"""
Conversion orchestrator.

``ConversionService.convert`` is the single entry point the HTTP layer
calls. It validates the request, answers from the result cache when it
can, and otherwise holds an admission slot for the caller's tier while it
produces the artifact: streaming fast path first, discrete
extract-then-transcode as the fallback, plain HTTP download for media URLs
on hosts the extractor is not used for.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import requests
from fastapi.concurrency import run_in_threadpool

from . import settings
from .admission import AdmissionController
from .cache import ResultCache
from .errors import CacheWriteError, ExtractionError, InputError, PipeError
from .extraction import ExtractionEngine
from .models import CacheEntry, ConversionJob, Quality, Tier
from .personas import BROWSER_USER_AGENT, resolve_personas
from .pipe import StreamingTranscoder
from .transcode import transcode_to_mp3
from .urls import is_http_url, is_short_content, is_supported_url, normalize

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1 << 20


@dataclass
class ConversionRequest:
    source_reference: Optional[str] = None
    uploaded_file_path: Optional[Path] = None
    caller_tier: Tier = Tier.STANDARD
    high_priority: bool = False
    original_filename: Optional[str] = None


@dataclass
class ConversionResult:
    path: Path
    size_bytes: int
    elapsed_seconds: float
    cached: bool
    tier: Tier
    quality: Quality
    filename: str
    persona: Optional[str] = None
    # True when ``path`` is a scratch file the caller must delete after use.
    cleanup: bool = False


def cleanup_path(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


def download_direct(url: str, destination: Path, *, timeout: float, max_bytes: int) -> Path:
    """Stream a plain media URL to ``destination``."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with requests.get(
        url, stream=True, timeout=timeout, headers={"User-Agent": BROWSER_USER_AGENT}
    ) as response:
        response.raise_for_status()
        with destination.open("wb") as handle:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if not chunk:
                    continue
                written += len(chunk)
                if written > max_bytes:
                    raise InputError(
                        f"File size exceeds {max_bytes // (1024 * 1024)}MB limit.",
                        kind="FILE_TOO_LARGE",
                    )
                handle.write(chunk)
    logger.info("Downloaded %d bytes from %s", written, url)
    return destination


class ConversionService:
    def __init__(
        self,
        *,
        admission: AdmissionController,
        cache: ResultCache,
        engine: ExtractionEngine,
        streamer: Optional[StreamingTranscoder] = None,
        streaming_enabled: bool = True,
        ffmpeg_binary: str = "ffmpeg",
        transcode_timeout: float = 600.0,
        min_output_bytes: int = 4096,
        max_upload_bytes: int = 500 * 1024 * 1024,
        direct_download_timeout: float = 120.0,
    ) -> None:
        self.admission = admission
        self.cache = cache
        self.engine = engine
        self.streamer = streamer
        self.streaming_enabled = streaming_enabled
        self.ffmpeg_binary = ffmpeg_binary
        self.transcode_timeout = transcode_timeout
        self.min_output_bytes = min_output_bytes
        self.max_upload_bytes = max_upload_bytes
        self.direct_download_timeout = direct_download_timeout

    @classmethod
    def from_settings(cls) -> "ConversionService":
        engine = ExtractionEngine(
            resolve_personas(settings.PERSONA_ORDER, settings.FORCED_PERSONA),
            scratch_dir=settings.SCRATCH_DIR,
            binary=settings.YTDLP_BINARY,
            proxy=settings.YTDLP_PROXY,
            proxy_skip_hosts=settings.PROXY_SKIP_HOSTS,
            cookies_file=settings.YTDLP_COOKIES_FILE,
            browser=settings.YTDLP_BROWSER,
            timeout=settings.EXTRACTION_TIMEOUT,
            probe_enabled=settings.PROBE_ENABLED,
            probe_timeout=settings.PROBE_TIMEOUT,
            long_content_seconds=settings.LONG_CONTENT_SECONDS,
        )
        return cls(
            admission=AdmissionController(settings.TIER_LIMITS),
            cache=ResultCache(
                settings.CACHE_DIR,
                extension=settings.CACHE_EXTENSION,
                max_age_seconds=settings.CACHE_MAX_AGE_DAYS * 24 * 3600,
                sweep_interval_seconds=settings.CACHE_SWEEP_INTERVAL_HOURS * 3600,
            ),
            engine=engine,
            streamer=StreamingTranscoder(
                engine,
                ffmpeg_binary=settings.FFMPEG_BINARY,
                inactivity_timeout=settings.PIPE_INACTIVITY_TIMEOUT,
                total_timeout=settings.PIPE_TOTAL_TIMEOUT,
                min_output_bytes=settings.MIN_OUTPUT_BYTES,
            ),
            streaming_enabled=settings.STREAMING_ENABLED,
            ffmpeg_binary=settings.FFMPEG_BINARY,
            transcode_timeout=settings.TRANSCODE_TIMEOUT,
            min_output_bytes=settings.MIN_OUTPUT_BYTES,
            max_upload_bytes=settings.MAX_UPLOAD_BYTES,
            direct_download_timeout=settings.DIRECT_DOWNLOAD_TIMEOUT,
        )

    @property
    def scratch_dir(self) -> Path:
        return self.engine.scratch_dir

    async def convert(self, request: ConversionRequest) -> ConversionResult:
        started = time.monotonic()
        tier = Tier(request.caller_tier)
        quality = Quality.for_tier(tier)
        reference = (request.source_reference or "").strip()

        if reference and request.uploaded_file_path is not None:
            raise InputError("Send either a video file or a URL, not both", kind="AMBIGUOUS_INPUT")
        if request.uploaded_file_path is not None:
            return await self._convert_upload(request, tier, quality, started)
        if not reference:
            raise InputError("No video file or URL", kind="NO_INPUT")

        normalized = normalize(reference)
        if not is_http_url(normalized):
            raise InputError(f"Unsupported video reference: {reference}", kind="URL_UNSUPPORTED")

        key = self.cache.key_for(normalized, quality)
        job = ConversionJob(
            job_id=uuid.uuid4().hex,
            source_reference=normalized,
            caller_tier=tier,
            normalized_key=key,
            requested_quality=quality,
            short_content=is_short_content(reference),
        )

        entry = self.cache.lookup(key)
        if entry:
            logger.info("Cache hit for %s", normalized)
            return self._result_from_entry(entry, job, started, cached=True)

        async with self.admission.slot(tier, high_priority=request.high_priority):
            # Another job may have finished the same key while this one queued.
            entry = self.cache.lookup(key)
            if entry:
                logger.info("Cache filled for %s while waiting for a slot", normalized)
                return self._result_from_entry(entry, job, started, cached=True)

            if is_supported_url(normalized):
                output, persona = await self._convert_platform(job)
            else:
                output, persona = await self._convert_direct(job), None
            return await self._store(job, output, persona, started)

    async def _convert_platform(self, job: ConversionJob) -> Tuple[Path, Optional[str]]:
        if self.streaming_enabled and self.streamer is not None:
            persona = self.engine.plan()[0]
            try:
                return await self.streamer.stream_convert(job, persona), persona.name
            except PipeError as exc:
                logger.warning("Streaming failed for %s (%s), using discrete flow", job.source_reference, exc)

        outcome = await self.engine.extract(job)
        if outcome.path.suffix.lower() == ".mp3":
            logger.info("Extracted file is already MP3, skipping transcode")
            return outcome.path, outcome.persona.name

        output = self.scratch_dir / f"ahs_{job.job_id}-converted.mp3"
        try:
            await self._transcode(outcome.path, output, job.requested_quality)
        finally:
            cleanup_path(outcome.path)
        return output, outcome.persona.name

    async def _convert_direct(self, job: ConversionJob) -> Path:
        download_path = self.scratch_dir / f"ahs_{job.job_id}-direct.video"
        output = self.scratch_dir / f"ahs_{job.job_id}-converted.mp3"
        try:
            try:
                await run_in_threadpool(
                    download_direct,
                    job.source_reference,
                    download_path,
                    timeout=self.direct_download_timeout,
                    max_bytes=self.max_upload_bytes,
                )
            except requests.RequestException as exc:
                raise ExtractionError(
                    f"Could not download the video from that URL: {exc}", kind="DOWNLOAD_FAILED"
                ) from exc
            await self._transcode(download_path, output, job.requested_quality)
        finally:
            cleanup_path(download_path)
        return output

    async def _convert_upload(
        self, request: ConversionRequest, tier: Tier, quality: Quality, started: float
    ) -> ConversionResult:
        source = Path(request.uploaded_file_path)
        if not source.is_file():
            raise InputError("The uploaded file could not be read", kind="UPLOAD_ERROR")
        if source.stat().st_size > self.max_upload_bytes:
            raise InputError(
                f"File size exceeds {self.max_upload_bytes // (1024 * 1024)}MB limit.",
                kind="FILE_TOO_LARGE",
            )

        output = self.scratch_dir / f"ahs_{uuid.uuid4().hex}-upload.mp3"
        async with self.admission.slot(tier, high_priority=request.high_priority):
            await self._transcode(source, output, quality)
        stem = Path(request.original_filename or "audio").stem or "audio"
        return ConversionResult(
            path=output,
            size_bytes=output.stat().st_size,
            elapsed_seconds=time.monotonic() - started,
            cached=False,
            tier=tier,
            quality=quality,
            filename=f"{stem}.mp3",
            cleanup=True,
        )

    async def _transcode(self, source: Path, output: Path, quality: Quality) -> Path:
        return await transcode_to_mp3(
            source,
            output,
            quality,
            binary=self.ffmpeg_binary,
            timeout=self.transcode_timeout,
            min_output_bytes=self.min_output_bytes,
        )

    async def _store(
        self, job: ConversionJob, output: Path, persona: Optional[str], started: float
    ) -> ConversionResult:
        try:
            entry = await run_in_threadpool(self.cache.populate, job.normalized_key, output)
        except CacheWriteError as exc:
            logger.warning("%s; returning uncached result", exc)
            return ConversionResult(
                path=output,
                size_bytes=output.stat().st_size,
                elapsed_seconds=time.monotonic() - started,
                cached=False,
                tier=job.caller_tier,
                quality=job.requested_quality,
                filename=self._filename(job),
                persona=persona,
                cleanup=True,
            )
        cleanup_path(output)
        result = self._result_from_entry(entry, job, started, cached=False)
        result.persona = persona
        return result

    def _result_from_entry(
        self, entry: CacheEntry, job: ConversionJob, started: float, *, cached: bool
    ) -> ConversionResult:
        return ConversionResult(
            path=entry.file_path,
            size_bytes=entry.size_bytes,
            elapsed_seconds=time.monotonic() - started,
            cached=cached,
            tier=job.caller_tier,
            quality=job.requested_quality,
            filename=self._filename(job),
        )

    @staticmethod
    def _filename(job: ConversionJob) -> str:
        return f"audio_{job.normalized_key[:12]}.mp3"
