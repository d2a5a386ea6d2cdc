from __future__ import annotations

import pytest

from audioharvest.personas import (
    CONTAINER_TOLERANT_ARGS,
    PERSONAS,
    build_extraction_args,
    proxy_for,
    resolve_personas,
)

URL = "https://www.youtube.com/watch?v=abc12345678"


def test_resolve_default_order() -> None:
    personas = resolve_personas(["browser", "android", "ios", "traditional"])
    assert [persona.name for persona in personas] == ["browser", "android", "ios", "traditional"]


def test_forced_persona_replaces_order() -> None:
    personas = resolve_personas(["browser", "android"], forced="ios")
    assert [persona.name for persona in personas] == ["ios"]


def test_unknown_or_empty_persona_config_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown persona"):
        resolve_personas(["browser", "smart-tv"])
    with pytest.raises(ValueError):
        resolve_personas([])


def test_proxy_skipped_for_listed_hosts() -> None:
    proxy = "http://proxy:8080"
    assert proxy_for(PERSONAS["browser"], URL, proxy) == proxy
    assert proxy_for(PERSONAS["browser"], URL, proxy, ["youtube.com"]) is None
    assert proxy_for(PERSONAS["browser"], "https://vimeo.com/1", proxy, ["youtube.com"]) == proxy
    assert proxy_for(PERSONAS["browser"], URL, None) is None


def test_build_args_for_browser_persona() -> None:
    args = build_extraction_args(
        PERSONAS["browser"],
        URL,
        output="-",
        proxy="http://proxy:8080",
        cookies_file="/secrets/cookies.txt",
        browser="firefox",
    )
    assert args[-1] == URL
    assert args[args.index("--output") + 1] == "-"
    assert args[args.index("--proxy") + 1] == "http://proxy:8080"
    assert args[args.index("--cookies") + 1] == "/secrets/cookies.txt"
    assert "--cookies-from-browser" not in args
    assert args[args.index("--referer") + 1] == "https://www.youtube.com/"
    assert "--hls-use-mpegts" not in args


def test_build_args_container_tolerant_and_compact_format() -> None:
    args = build_extraction_args(
        PERSONAS["compact"], URL, output="/tmp/ahs_x.%(ext)s", container_tolerant=True
    )
    assert args[args.index("--format") + 1] == "bestaudio[abr<=128]/bestaudio/best"
    for flag in CONTAINER_TOLERANT_ARGS:
        assert flag in args
    assert "--proxy" not in args
