"""
Reference normalization.

The canonical form produced here feeds the cache key, so ``normalize`` must
stay a pure total function: same input, same output, never an exception.
"""

import re
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlsplit

YOUTUBE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
WATCH_URL = "https://www.youtube.com/watch"
SUPPORTED_HOSTS = ("youtube.com", "youtu.be", "vimeo.com", "dailymotion.com")
# Path markers that carry the video id as the following segment.
ID_PATH_MARKERS = ("embed", "v", "shorts", "live")


def _first(query: Dict[str, List[str]], name: str) -> Optional[str]:
    values = query.get(name) or []
    return values[0] if values else None


def _watch_url(video_id: str, timestamp: Optional[str] = None) -> str:
    params = {"v": video_id}
    if timestamp:
        params["t"] = timestamp
    return f"{WATCH_URL}?{urlencode(params)}"


def host_of(url: str) -> str:
    try:
        return (urlsplit(str(url).strip()).hostname or "").lower()
    except ValueError:
        return ""


def is_http_url(value: str) -> bool:
    try:
        parsed = urlsplit(str(value).strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def is_supported_url(url: str) -> bool:
    """Hosted platforms that need the extraction engine rather than a plain GET."""
    if not is_http_url(url):
        return False
    host = host_of(url)
    return any(candidate in host for candidate in SUPPORTED_HOSTS)


def is_short_content(reference: str) -> bool:
    try:
        parsed = urlsplit(str(reference).strip())
    except ValueError:
        return False
    return "youtube" in (parsed.hostname or "").lower() and "/shorts/" in parsed.path


def normalize(reference: str) -> str:
    """Return the canonical, tracking-free form of a media reference.

    Bare 11 character ids and every YouTube URL shape (watch, youtu.be,
    embed, /v/, shorts, live) collapse to ``https://www.youtube.com/watch?v=ID``
    keeping only an optional ``t`` timestamp. Vimeo and Dailymotion lose their
    query string. Anything unrecognised, or unparseable, comes back unchanged.
    """
    try:
        raw = str(reference).strip()
        if not raw:
            return raw
        if YOUTUBE_ID_PATTERN.match(raw):
            return _watch_url(raw)

        parsed = urlsplit(urljoin("https://www.youtube.com/", raw))
        host = (parsed.hostname or "").lower()
        query = parse_qs(parsed.query)

        if host == "youtu.be":
            video_id = parsed.path.lstrip("/").split("/")[0]
            if video_id:
                return _watch_url(video_id, _first(query, "t"))
            return raw

        if host.endswith("youtube.com") or "youtube" in host:
            video_id = _first(query, "v")
            if video_id:
                return _watch_url(video_id, _first(query, "t"))
            parts = [part for part in parsed.path.split("/") if part]
            for marker in ID_PATH_MARKERS:
                if marker in parts:
                    index = parts.index(marker)
                    if index + 1 < len(parts):
                        return _watch_url(parts[index + 1])
            # Channel and playlist pages have no single id.
            return raw

        if "vimeo.com" in host or "dailymotion.com" in host:
            return f"{parsed.scheme}://{parsed.netloc.lower()}{parsed.path}"

        return raw
    except (ValueError, TypeError, AttributeError):
        return reference
