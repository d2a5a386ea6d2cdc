"""
Maps free-form extraction diagnostics to a small set of user-facing kinds.

The rules are substring heuristics over yt-dlp output, which changes between
releases. They are evaluated in order and the first match wins; anything
unmatched falls through to ``VIDEO_UNAVAILABLE``.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple


@dataclass(frozen=True)
class ClassifiedError:
    kind: str
    user_message: str


Predicate = Callable[[str], bool]

FALLBACK = ClassifiedError(
    "VIDEO_UNAVAILABLE",
    "Unable to download this video. It may be unavailable, deleted, or region-restricted.",
)

RULES: List[Tuple[Predicate, ClassifiedError]] = [
    (
        lambda text: "sign in to confirm" in text or ("sign in" in text and "bot" in text),
        ClassifiedError(
            "VIDEO_RATE_LIMITED",
            "The platform is blocking requests from this server. Please try a different "
            "video or try again in a few minutes.",
        ),
    ),
    (
        lambda text: "vimeo" in text
        and ("logged-in" in text or "authentication" in text or "use --cookies" in text),
        ClassifiedError(
            "VIDEO_REQUIRES_AUTH",
            "This Vimeo video requires authentication. Please try a different platform.",
        ),
    ),
    (
        lambda text: "sqlite3" in text
        or "cookies.sqlite" in text
        or ("cookie" in text and "database" in text),
        ClassifiedError(
            "VIDEO_UNAVAILABLE",
            "Unable to download this video at the moment. Please try again later.",
        ),
    ),
    (
        lambda text: "this video is private" in text or "private video" in text,
        ClassifiedError("VIDEO_PRIVATE", "This video is private and cannot be downloaded."),
    ),
    (
        lambda text: "age" in text and ("restricted" in text or "confirm your age" in text),
        ClassifiedError(
            "VIDEO_AGE_RESTRICTED", "This video is age-restricted and requires authentication."
        ),
    ),
    (
        lambda text: "members-only" in text or "join this channel" in text,
        ClassifiedError("VIDEO_MEMBERS_ONLY", "This video is for channel members only."),
    ),
    (
        lambda text: "copyright" in text and "blocked" in text,
        ClassifiedError(
            "VIDEO_COPYRIGHT", "This video is blocked due to copyright restrictions."
        ),
    ),
    (
        lambda text: "http error 429" in text or "too many requests" in text,
        ClassifiedError("RATE_LIMITED", "Too many requests. Please try again in a few minutes."),
    ),
]


def classify(raw_output: Optional[str]) -> ClassifiedError:
    text = (raw_output or "").lower()
    if not text:
        return FALLBACK
    for predicate, classified in RULES:
        if predicate(text):
            return classified
    return FALLBACK
