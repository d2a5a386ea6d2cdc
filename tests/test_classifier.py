from __future__ import annotations

import pytest

from audioharvest.classifier import FALLBACK, classify


@pytest.mark.parametrize(
    ("raw_output", "kind"),
    [
        ("ERROR: [youtube] abc12345678: Sign in to confirm you're not a bot", "VIDEO_RATE_LIMITED"),
        ("ERROR: [vimeo] 76979871: This video is only available for logged-in users", "VIDEO_REQUIRES_AUTH"),
        ("ERROR: could not find chrome cookies database", "VIDEO_UNAVAILABLE"),
        ("ERROR: [youtube] abc12345678: Private video. Sign in if you've been granted access", "VIDEO_PRIVATE"),
        ("ERROR: [youtube] abc12345678: This video is age-restricted", "VIDEO_AGE_RESTRICTED"),
        ("ERROR: Join this channel to get access to members-only content", "VIDEO_MEMBERS_ONLY"),
        ("ERROR: This video contains content from Studio, who has blocked it on copyright grounds", "VIDEO_COPYRIGHT"),
        ("ERROR: unable to download webpage: HTTP Error 429: Too Many Requests", "RATE_LIMITED"),
    ],
)
def test_known_diagnostics(raw_output: str, kind: str) -> None:
    assert classify(raw_output).kind == kind


def test_first_matching_rule_wins() -> None:
    assert classify("Private video\nHTTP Error 429: Too Many Requests").kind == "VIDEO_PRIVATE"


def test_unmatched_and_empty_output_fall_back() -> None:
    assert classify("ERROR: something entirely new happened") == FALLBACK
    assert classify("") == FALLBACK
    assert classify(None) == FALLBACK


def test_matching_is_case_insensitive() -> None:
    assert classify("THIS VIDEO IS PRIVATE").kind == "VIDEO_PRIVATE"
