import base64
import logging
import sys
import tempfile
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from . import __version__, settings
from .errors import ConversionError, ExtractionError, InputError
from .models import Tier
from .service import ConversionRequest, ConversionService, cleanup_path

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="[ahs] %(asctime)s %(levelname)s %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

service = ConversionService.from_settings()


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings.SCRATCH_DIR.mkdir(parents=True, exist_ok=True)
    settings.CACHE_DIR.mkdir(parents=True, exist_ok=True)
    service.cache.start_sweeper()
    logger.info(
        "Ready: personas=%s streaming=%s cookies=%s proxy=%s",
        ",".join(persona.name for persona in service.engine.personas),
        service.streaming_enabled,
        bool(settings.YTDLP_COOKIES_FILE or settings.YTDLP_BROWSER),
        bool(settings.YTDLP_PROXY),
    )
    try:
        yield
    finally:
        await service.cache.stop_sweeper()


app = FastAPI(title=settings.APP_TITLE, version=__version__, lifespan=lifespan)


def error_response(exc: ConversionError) -> JSONResponse:
    if exc.kind == "FILE_TOO_LARGE":
        status_code = 413
    elif isinstance(exc, (InputError, ExtractionError)):
        status_code = 400
    else:
        return JSONResponse(
            status_code=500, content={"error": exc.user_message, "errorCode": "SERVER_ERROR"}
        )
    return JSONResponse(status_code=status_code, content={"error": exc.user_message, "errorCode": exc.kind})


@app.exception_handler(ConversionError)
async def conversion_error_handler(_: Request, exc: ConversionError) -> JSONResponse:
    logger.warning("Conversion failed: %s", exc)
    return error_response(exc)


async def save_upload_file(upload: UploadFile, limit: int) -> Path:
    """Stream an upload to scratch in 1 MiB chunks, refusing anything past ``limit``."""
    settings.SCRATCH_DIR.mkdir(parents=True, exist_ok=True)
    suffix = Path(upload.filename or "upload.bin").suffix or ".bin"
    written = 0
    with tempfile.NamedTemporaryFile(
        delete=False, suffix=suffix, prefix="ahs_upload_", dir=settings.SCRATCH_DIR
    ) as tmp:
        path = Path(tmp.name)
        try:
            while True:
                chunk = await upload.read(1 << 20)
                if not chunk:
                    break
                written += len(chunk)
                if written > limit:
                    raise InputError(
                        f"File size exceeds {limit // (1024 * 1024)}MB limit.", kind="FILE_TOO_LARGE"
                    )
                tmp.write(chunk)
        except BaseException:
            tmp.close()
            cleanup_path(path)
            raise
    await upload.close()
    return path


async def read_conversion_input(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise InputError("The request body is not valid JSON", kind="UPLOAD_ERROR") from exc
        video_url = payload.get("videoUrl") if isinstance(payload, dict) else None
        return {"video_url": video_url if isinstance(video_url, str) else None, "upload": None}

    form = await request.form()
    upload = form.get("video")
    if not isinstance(upload, UploadFile) or not upload.filename:
        upload = None
    video_url = form.get("videoUrl")
    return {"video_url": video_url if isinstance(video_url, str) else None, "upload": upload}


@app.post("/convert-video-to-mp3")
async def convert_video_to_mp3(request: Request) -> Dict[str, Any]:
    started = time.monotonic()
    tier = Tier.parse(request.headers.get("x-user-tier"))
    high_priority = (request.headers.get("x-priority") or "").strip().lower() == "high"
    logger.info("Conversion request from %s caller", tier.value)

    inputs = await read_conversion_input(request)
    upload: Optional[UploadFile] = inputs["upload"]
    upload_path: Optional[Path] = None
    try:
        if upload is not None:
            upload_path = await save_upload_file(upload, service.max_upload_bytes)
        result = await service.convert(
            ConversionRequest(
                source_reference=inputs["video_url"],
                uploaded_file_path=upload_path,
                caller_tier=tier,
                high_priority=high_priority,
                original_filename=upload.filename if upload is not None else None,
            )
        )
    finally:
        cleanup_path(upload_path)

    try:
        audio = await run_in_threadpool(result.path.read_bytes)
    finally:
        if result.cleanup:
            cleanup_path(result.path)

    elapsed = time.monotonic() - started
    logger.info("Delivered %s in %.1fs (cached=%s)", result.filename, elapsed, result.cached)
    return {
        "success": True,
        "audioData": base64.b64encode(audio).decode("ascii"),
        "filename": result.filename,
        "size": f"{result.size_bytes / 1024 / 1024:.2f} MB",
        "conversionTime": f"{elapsed:.1f}s",
        "tier": result.tier.value,
        "cached": result.cached,
    }


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "version": __version__,
        "personas": [persona.name for persona in service.engine.personas],
        "streamingEnabled": service.streaming_enabled,
        "cookiesEnabled": bool(settings.YTDLP_COOKIES_FILE or settings.YTDLP_BROWSER),
        "proxyEnabled": bool(settings.YTDLP_PROXY),
        "admission": {"active": service.admission.active, "waiting": service.admission.waiting},
    }


@app.get("/api/cache")
async def cache_status() -> Dict[str, Any]:
    now = time.time()
    items: List[Dict[str, Any]] = []
    total_bytes = 0
    for entry in await run_in_threadpool(service.cache.entries):
        total_bytes += entry.size_bytes
        items.append(
            {
                "cache_key": entry.key,
                "filename": entry.file_path.name,
                "filesize_bytes": entry.size_bytes,
                "age_seconds": max(0, int(now - entry.created_at)),
                "created_at_iso": datetime.fromtimestamp(entry.created_at, tz=timezone.utc).isoformat(),
            }
        )
    return {
        "items": items,
        "max_age_seconds": service.cache.max_age_seconds,
        "sweep_interval_seconds": service.cache.sweep_interval_seconds,
        "total_bytes": total_bytes,
    }


@app.delete("/api/cache/{cache_key}")
async def remove_cached_entry(cache_key: str) -> Dict[str, Any]:
    if not cache_key.isalnum():
        raise HTTPException(status_code=400, detail="Invalid cache key")
    removed = await run_in_threadpool(service.cache.remove, cache_key)
    if not removed:
        raise HTTPException(status_code=404, detail="Cache entry not found")
    return {"status": "deleted", "cache_key": cache_key}
