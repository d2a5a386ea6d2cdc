import os
import tempfile
from pathlib import Path
from typing import Dict, List

import certifi
from dotenv import load_dotenv

# Ensure the runtime always has a CA bundle to prevent SSL failures, even in
# slim containers where the OS certificates may be missing. Both requests and
# the yt-dlp probe honour these variables.
CERT_BUNDLE = certifi.where()
os.environ["SSL_CERT_FILE"] = CERT_BUNDLE
os.environ["REQUESTS_CA_BUNDLE"] = CERT_BUNDLE

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


APP_TITLE = "AHS · Audio Harvester Service"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CACHE_DIR = Path(os.getenv("CACHE_DIR", "data/cache"))
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", tempfile.gettempdir()))
CACHE_EXTENSION = ".mp3"
CACHE_MAX_AGE_DAYS = float(os.getenv("CACHE_MAX_AGE_DAYS", "7"))
CACHE_SWEEP_INTERVAL_HOURS = float(os.getenv("CACHE_SWEEP_INTERVAL_HOURS", "24"))

TIER_LIMITS: Dict[str, int] = {
    "standard": int(os.getenv("TIER_LIMIT_STANDARD", "2")),
    "premium": int(os.getenv("TIER_LIMIT_PREMIUM", "4")),
    "business": int(os.getenv("TIER_LIMIT_BUSINESS", "6")),
    "enterprise": int(os.getenv("TIER_LIMIT_ENTERPRISE", "8")),
}

STREAMING_ENABLED = _env_bool("STREAMING_ENABLED", True)
PIPE_INACTIVITY_TIMEOUT = float(os.getenv("PIPE_INACTIVITY_TIMEOUT", "45"))
PIPE_TOTAL_TIMEOUT = float(os.getenv("PIPE_TOTAL_TIMEOUT", "600"))
MIN_OUTPUT_BYTES = int(os.getenv("MIN_OUTPUT_BYTES", "4096"))

EXTRACTION_TIMEOUT = float(os.getenv("EXTRACTION_TIMEOUT", "300"))
TRANSCODE_TIMEOUT = float(os.getenv("TRANSCODE_TIMEOUT", "600"))
PROBE_ENABLED = _env_bool("PROBE_ENABLED", True)
PROBE_TIMEOUT = float(os.getenv("PROBE_TIMEOUT", "20"))
LONG_CONTENT_SECONDS = float(os.getenv("LONG_CONTENT_SECONDS", "3600"))

YTDLP_BINARY = os.getenv("YTDLP_BINARY", "yt-dlp")
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
YTDLP_PROXY = os.getenv("YTDLP_PROXY") or None
PROXY_SKIP_HOSTS = [host.lower() for host in _env_list("PROXY_SKIP_HOSTS")]
YTDLP_COOKIES_FILE = os.getenv("YTDLP_COOKIES_FILE") or None
YTDLP_BROWSER = os.getenv("YTDLP_BROWSER") or None

PERSONA_ORDER = _env_list("PERSONA_ORDER", "browser,android,ios,traditional")
FORCED_PERSONA = (os.getenv("FORCED_PERSONA") or "").strip() or None

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))
DIRECT_DOWNLOAD_TIMEOUT = float(os.getenv("DIRECT_DOWNLOAD_TIMEOUT", "120"))
