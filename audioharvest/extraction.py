"""
Extraction strategy engine.

Personas are tried strictly in order. Each attempt ends in one of three
results: ``Success`` with the discovered artifact, ``Retry`` with corrected
options (at most once per persona), or ``NextPersona``. When the list runs
out the stderr of the last failed attempt is classified and raised.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import yt_dlp
from fastapi.concurrency import run_in_threadpool

from .classifier import classify
from .errors import ExtractionError
from .models import AttemptOutcome, ConversionJob, ExtractionAttempt
from .personas import (
    BROWSER_USER_AGENT,
    PERSONAS,
    Persona,
    build_extraction_args,
    proxy_for,
)
from .process import ToolResult, last_line, run_tool

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = (
    ".mp3",
    ".m4a",
    ".webm",
    ".opus",
    ".ogg",
    ".aac",
    ".wav",
    ".flac",
    ".mp4",
    ".mkv",
)
PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp", ".tmp")

PROXY_PROTOCOL_MARKERS = (
    "unsupported proxy",
    "unable to handle proxy",
    "https proxies are not supported",
)
PROXY_FAILURE_MARKERS = ("proxy", "tunnel connection failed", "403", "forbidden")
CONTAINER_MARKERS = (
    "m3u8",
    "fragment",
    "moov atom not found",
    "invalid data found when processing input",
    "dash manifest",
)


@dataclass(frozen=True)
class AttemptOptions:
    proxy: Optional[str] = None
    container_tolerant: bool = False


@dataclass(frozen=True)
class Success:
    path: Path


@dataclass(frozen=True)
class Retry:
    correction: str
    options: AttemptOptions


@dataclass(frozen=True)
class NextPersona:
    reason: str


AttemptResult = Union[Success, Retry, NextPersona]
Runner = Callable[..., Awaitable[ToolResult]]
Prober = Callable[[str, Optional[str], float], Dict[str, Any]]


@dataclass
class ExtractionOutcome:
    path: Path
    persona: Persona
    attempts: List[ExtractionAttempt]
    probe: Optional[Dict[str, Any]] = None


def corrective_retry(stderr: str, options: AttemptOptions) -> Optional[Retry]:
    """Pick the persona-local fix suggested by a failed attempt's stderr, if any."""
    text = (stderr or "").lower()
    if options.proxy:
        if options.proxy.lower().startswith("https://") and any(
            marker in text for marker in PROXY_PROTOCOL_MARKERS
        ):
            downgraded = "http://" + options.proxy[len("https://"):]
            return Retry(
                "proxy_downgrade",
                AttemptOptions(proxy=downgraded, container_tolerant=options.container_tolerant),
            )
        if any(marker in text for marker in PROXY_FAILURE_MARKERS):
            return Retry(
                "proxy_stripped",
                AttemptOptions(proxy=None, container_tolerant=options.container_tolerant),
            )
    if not options.container_tolerant and any(marker in text for marker in CONTAINER_MARKERS):
        return Retry(
            "container_tolerant", AttemptOptions(proxy=options.proxy, container_tolerant=True)
        )
    return None


def probe_media(url: str, proxy: Optional[str] = None, timeout: float = 20.0) -> Dict[str, Any]:
    ydl_opts: Dict[str, Any] = {
        "socket_timeout": timeout,
        "quiet": True,
        "no_warnings": True,
        "noprogress": True,
        "noplaylist": True,
        "skip_download": True,
        "http_headers": {"User-Agent": BROWSER_USER_AGENT},
    }
    if proxy:
        ydl_opts["proxy"] = proxy
    with yt_dlp.YoutubeDL(ydl_opts) as ydl:
        info = ydl.extract_info(url, download=False) or {}
    return {
        "id": info.get("id"),
        "title": info.get("title"),
        "duration": info.get("duration"),
        "extractor": info.get("extractor"),
    }


class ExtractionEngine:
    def __init__(
        self,
        personas: Sequence[Persona],
        *,
        scratch_dir: Path,
        binary: str = "yt-dlp",
        proxy: Optional[str] = None,
        proxy_skip_hosts: Sequence[str] = (),
        cookies_file: Optional[str] = None,
        browser: Optional[str] = None,
        timeout: float = 300.0,
        probe_enabled: bool = True,
        probe_timeout: float = 20.0,
        long_content_seconds: float = 3600.0,
        runner: Runner = run_tool,
        prober: Prober = probe_media,
    ) -> None:
        if not personas:
            raise ValueError("ExtractionEngine needs at least one persona")
        self.personas = list(personas)
        self.scratch_dir = Path(scratch_dir)
        self.binary = binary
        self.proxy = proxy
        self.proxy_skip_hosts = list(proxy_skip_hosts)
        self.cookies_file = cookies_file
        self.browser = browser
        self.timeout = timeout
        self.probe_enabled = probe_enabled
        self.probe_timeout = probe_timeout
        self.long_content_seconds = long_content_seconds
        self._runner = runner
        self._prober = prober

    def output_prefix(self, job: ConversionJob) -> str:
        return f"ahs_{job.job_id}"

    def command_for(
        self,
        persona: Persona,
        job: ConversionJob,
        options: AttemptOptions,
        *,
        output: Optional[str] = None,
    ) -> List[str]:
        template = output or str(self.scratch_dir / f"{self.output_prefix(job)}.%(ext)s")
        return [
            self.binary,
            *build_extraction_args(
                persona,
                job.source_reference,
                output=template,
                proxy=options.proxy,
                cookies_file=self.cookies_file,
                browser=self.browser,
                container_tolerant=options.container_tolerant,
            ),
        ]

    def default_options(self, persona: Persona, job: ConversionJob) -> AttemptOptions:
        return AttemptOptions(
            proxy=proxy_for(persona, job.source_reference, self.proxy, self.proxy_skip_hosts)
        )

    async def probe(self, job: ConversionJob) -> Optional[Dict[str, Any]]:
        """Best-effort metadata lookup; any failure just means default ordering."""
        if not self.probe_enabled or job.short_content:
            return None
        proxy = proxy_for(self.personas[0], job.source_reference, self.proxy, self.proxy_skip_hosts)
        try:
            return await asyncio.wait_for(
                run_in_threadpool(self._prober, job.source_reference, proxy, self.probe_timeout),
                timeout=self.probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Probe timed out after %.0fs for %s", self.probe_timeout, job.source_reference)
        except Exception as exc:  # yt-dlp raises a wide range of errors here
            logger.warning("Probe failed for %s: %s", job.source_reference, exc)
        return None

    def plan(self, probe_info: Optional[Dict[str, Any]] = None) -> List[Persona]:
        personas = list(self.personas)
        duration = (probe_info or {}).get("duration")
        if len(personas) > 1 and duration:
            try:
                is_long = float(duration) >= self.long_content_seconds
            except (TypeError, ValueError):
                is_long = False
            if is_long:
                compact = PERSONAS["compact"]
                personas = [compact] + [p for p in personas if p.name != compact.name]
        return personas

    def discover(self, job: ConversionJob) -> Optional[Path]:
        """Find the artifact by job prefix; personas may pick different extensions."""
        prefix = f"{self.output_prefix(job)}."
        if not self.scratch_dir.exists():
            return None
        candidates = [
            path
            for path in self.scratch_dir.iterdir()
            if path.is_file()
            and path.name.startswith(prefix)
            and not path.name.endswith(PARTIAL_SUFFIXES)
            and path.suffix.lower() in MEDIA_EXTENSIONS
        ]
        if not candidates:
            return None
        for path in candidates:
            if path.suffix.lower() == ".mp3":
                return path
        return max(candidates, key=lambda path: path.stat().st_size)

    def cleanup_partials(self, job: ConversionJob) -> None:
        prefix = f"{self.output_prefix(job)}."
        if not self.scratch_dir.exists():
            return
        for path in self.scratch_dir.iterdir():
            if path.name.startswith(prefix):
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Could not remove partial file %s: %s", path, exc)

    async def attempt(
        self, job: ConversionJob, persona: Persona, options: AttemptOptions
    ) -> Tuple[AttemptResult, ToolResult]:
        self.cleanup_partials(job)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        command = self.command_for(persona, job, options)
        result = await self._runner(command, timeout=self.timeout, cwd=self.scratch_dir)
        if result.returncode == 0:
            path = self.discover(job)
            if path:
                return Success(path), result
            return NextPersona("extraction produced no output file"), result
        if not result.timed_out:
            correction = corrective_retry(result.stderr, options)
            if correction:
                return correction, result
        return NextPersona(last_line(result.stderr, f"exit code {result.returncode}")), result

    async def extract(self, job: ConversionJob) -> ExtractionOutcome:
        probe_info = await self.probe(job)
        attempts: List[ExtractionAttempt] = []
        last_failure: Optional[ExtractionAttempt] = None

        for persona in self.plan(probe_info):
            record = ExtractionAttempt(persona=persona.name, started_at=time.time())
            attempts.append(record)
            logger.info("Trying persona %s for %s", persona.name, job.source_reference)

            result, tool = await self.attempt(job, persona, self.default_options(persona, job))
            if isinstance(result, Retry):
                logger.info("Persona %s failed, retrying once with %s", persona.name, result.correction)
                record.corrective_retry = result.correction
                result, tool = await self.attempt(job, persona, result.options)
                if isinstance(result, Retry):
                    result = NextPersona(last_line(tool.stderr, f"exit code {tool.returncode}"))

            record.captured_exit_code = tool.returncode
            record.captured_stderr = tool.stderr
            if isinstance(result, Success):
                record.outcome = AttemptOutcome.SUCCESS
                logger.info("Persona %s succeeded: %s", persona.name, result.path.name)
                return ExtractionOutcome(
                    path=result.path, persona=persona, attempts=attempts, probe=probe_info
                )

            last_failure = record
            logger.warning("Persona %s failed: %s", persona.name, result.reason)

        self.cleanup_partials(job)
        raw_output = last_failure.captured_stderr if last_failure else ""
        classified = classify(raw_output)
        logger.error(
            "All %d personas failed for %s (%s)", len(attempts), job.source_reference, classified.kind
        )
        raise ExtractionError(
            classified.user_message, kind=classified.kind, attempts=attempts, raw_output=raw_output
        )
