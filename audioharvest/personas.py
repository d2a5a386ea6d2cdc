"""
Extraction personas.

A persona is a fixed client identity (user agent, headers, player client,
format selector, proxy use) presented to the platform. The engine walks an
ordered list of them until one gets through.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .urls import host_of

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
ANDROID_USER_AGENT = "com.google.android.youtube/19.09.37 (Linux; U; Android 13) gzip"
IOS_USER_AGENT = "com.google.ios.youtube/19.09.3 (iPhone14,3; U; CPU iOS 15_6 like Mac OS X)"

# Flags that make yt-dlp tolerate broken HLS/DASH containers.
CONTAINER_TOLERANT_ARGS: Tuple[str, ...] = ("--hls-use-mpegts", "--no-part", "--fixup", "warn")


@dataclass(frozen=True)
class Persona:
    name: str
    client_identity: Optional[str]
    header_set: Tuple[Tuple[str, str], ...] = ()
    format_selector: str = "bestaudio/best"
    uses_proxy: bool = True
    extractor_args: Tuple[str, ...] = ()
    extra_args: Tuple[str, ...] = ()
    compact: bool = False


PERSONAS: Dict[str, Persona] = {
    persona.name: persona
    for persona in (
        Persona(
            name="browser",
            client_identity=BROWSER_USER_AGENT,
            header_set=(
                ("Referer", "https://www.youtube.com/"),
                ("Accept-Language", "en-US,en;q=0.9"),
                ("Accept", "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"),
                ("Sec-Fetch-Site", "none"),
                ("Sec-Fetch-Mode", "navigate"),
                ("Sec-Fetch-Dest", "document"),
            ),
            extractor_args=("youtube:player_client=android,web", "youtube:skip=dash,hls"),
        ),
        Persona(
            name="android",
            client_identity=ANDROID_USER_AGENT,
            extractor_args=("youtube:player_client=android",),
        ),
        Persona(
            name="ios",
            client_identity=IOS_USER_AGENT,
            extractor_args=("youtube:player_client=ios",),
        ),
        Persona(
            name="traditional",
            client_identity=None,
            extra_args=(
                "--geo-bypass",
                "--retries",
                "5",
                "--fragment-retries",
                "5",
                "--extractor-retries",
                "3",
            ),
        ),
        Persona(
            name="compact",
            client_identity=ANDROID_USER_AGENT,
            format_selector="bestaudio[abr<=128]/bestaudio/best",
            extractor_args=("youtube:player_client=android",),
            compact=True,
        ),
    )
}


def resolve_personas(order: Iterable[str], forced: Optional[str] = None) -> List[Persona]:
    names = [forced] if forced else [name for name in order if name]
    if not names:
        raise ValueError("At least one extraction persona must be configured")
    unknown = [name for name in names if name not in PERSONAS]
    if unknown:
        raise ValueError(
            f"Unknown persona(s): {', '.join(unknown)}. Known: {', '.join(sorted(PERSONAS))}"
        )
    return [PERSONAS[name] for name in names]


def proxy_for(
    persona: Persona, url: str, proxy: Optional[str], skip_hosts: Sequence[str] = ()
) -> Optional[str]:
    if not proxy or not persona.uses_proxy:
        return None
    host = host_of(url)
    for skipped in skip_hosts:
        skipped = skipped.lower()
        if host == skipped or host.endswith(f".{skipped}"):
            return None
    return proxy


def build_extraction_args(
    persona: Persona,
    url: str,
    *,
    output: str,
    proxy: Optional[str] = None,
    cookies_file: Optional[str] = None,
    browser: Optional[str] = None,
    container_tolerant: bool = False,
) -> List[str]:
    """yt-dlp arguments for one attempt; ``output`` of ``-`` streams to stdout."""
    args = [
        "--no-playlist",
        "--no-mtime",
        "--format",
        persona.format_selector,
        "--output",
        output,
    ]
    if persona.client_identity:
        args += ["--user-agent", persona.client_identity]
    for name, value in persona.header_set:
        if name.lower() == "referer":
            args += ["--referer", value]
        else:
            args += ["--add-header", f"{name}:{value}"]
    for extractor_arg in persona.extractor_args:
        args += ["--extractor-args", extractor_arg]
    args += list(persona.extra_args)

    if cookies_file:
        args += ["--cookies", cookies_file]
    elif browser:
        args += ["--cookies-from-browser", browser]
    if proxy:
        args += ["--proxy", proxy]
    if container_tolerant:
        args += list(CONTAINER_TOLERANT_ARGS)

    args.append(url)
    return args
