import sys
from pathlib import Path

import pytest

# Ensure tests can import the package regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from tests.helpers import write_tool  # noqa: E402


@pytest.fixture
def make_tool(tmp_path):
    """Write an executable Python script standing in for yt-dlp or ffmpeg."""

    def _make(name: str, body: str) -> str:
        return write_tool(tmp_path / "bin", name, body)

    return _make
