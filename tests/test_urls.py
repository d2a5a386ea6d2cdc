from __future__ import annotations

import pytest

from audioharvest.urls import is_http_url, is_short_content, is_supported_url, normalize

CANONICAL = "https://www.youtube.com/watch?v=abc12345678"


def test_bare_identifier_becomes_watch_url() -> None:
    assert normalize("abc12345678") == CANONICAL


def test_embed_variant_normalizes_to_same_canonical_form() -> None:
    assert normalize("https://www.youtube.com/embed/abc12345678") == normalize("abc12345678")


@pytest.mark.parametrize(
    "reference",
    [
        "abc12345678",
        CANONICAL,
        "https://youtu.be/abc12345678?t=42",
        "https://www.youtube.com/embed/abc12345678",
        "https://www.youtube.com/shorts/abc12345678",
        "https://m.youtube.com/watch?v=abc12345678&list=PL123&index=4",
        "https://vimeo.com/76979871?share=copy",
        "https://example.com/media/clip.mp4?token=1",
        "not a url",
    ],
)
def test_normalize_is_idempotent(reference: str) -> None:
    once = normalize(reference)
    assert normalize(once) == once


def test_short_link_keeps_only_timestamp() -> None:
    assert normalize("https://youtu.be/abc12345678?t=42&si=tracking") == f"{CANONICAL}&t=42"


def test_watch_url_drops_playlist_and_tracking_params() -> None:
    reference = "https://m.youtube.com/watch?v=abc12345678&list=PL123&utm_source=share"
    assert normalize(reference) == CANONICAL


def test_shorts_live_and_legacy_paths_collapse_to_watch_url() -> None:
    assert normalize("https://www.youtube.com/shorts/abc12345678") == CANONICAL
    assert normalize("https://www.youtube.com/live/abc12345678?feature=share") == CANONICAL
    assert normalize("https://www.youtube.com/v/abc12345678") == CANONICAL


def test_vimeo_and_dailymotion_lose_query_string() -> None:
    assert normalize("https://Vimeo.com/76979871?share=copy") == "https://vimeo.com/76979871"
    assert (
        normalize("https://www.dailymotion.com/video/x8abcd?playlist=x1")
        == "https://www.dailymotion.com/video/x8abcd"
    )


def test_unrecognised_references_come_back_unchanged() -> None:
    assert normalize("https://example.com/media/clip.mp4?token=1") == "https://example.com/media/clip.mp4?token=1"
    assert normalize("https://www.youtube.com/@somechannel") == "https://www.youtube.com/@somechannel"
    assert normalize("not a url") == "not a url"
    assert normalize("") == ""


def test_supported_hosts() -> None:
    assert is_supported_url("https://youtu.be/abc12345678")
    assert is_supported_url("https://www.youtube.com/watch?v=abc12345678")
    assert is_supported_url("https://vimeo.com/76979871")
    assert not is_supported_url("https://example.com/clip.mp4")
    assert not is_supported_url("ftp://youtube.com/watch?v=abc12345678")


def test_http_url_check() -> None:
    assert is_http_url("http://example.com/a.mp4")
    assert not is_http_url("example.com/a.mp4")
    assert not is_http_url("file:///etc/passwd")


def test_short_content_detection() -> None:
    assert is_short_content("https://www.youtube.com/shorts/abc12345678")
    assert not is_short_content(CANONICAL)
    assert not is_short_content("https://example.com/shorts/abc")
