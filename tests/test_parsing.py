import pytest

from crawlcore.extraction.parsing import (
    author_handle_from_href,
    channel_videos_url,
    extract_post_id,
    extract_video_id,
    parse_count,
    timeline_url,
)


@pytest.mark.parametrize("text, expected", [
    ("1.2K", 1200),
    ("3M", 3_000_000),
    ("1B", 1_000_000_000),
    ("1,234", 1234),
    ("12 views", 12),
    ("45K views", 45_000),
    ("1 234", 1),
    ("", 0),
    (None, 0),
    ("views", 0),
])
def test_parse_count(text, expected):
    assert parse_count(text) == expected


def test_extract_post_id():
    assert extract_post_id("/someone/status/1789012345678901234") == "1789012345678901234"
    assert extract_post_id("https://x.com/someone/status/42/photo/1") == "42"
    assert extract_post_id("/someone") is None
    assert extract_post_id(None) is None


@pytest.mark.parametrize("value, expected", [
    ("/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=10", "dQw4w9WgXcQ"),
    ("/shorts/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("https://youtu.be/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("/channel/UCabc", None),
])
def test_extract_video_id(value, expected):
    assert extract_video_id(value) == expected


def test_target_urls():
    assert timeline_url("123") == "https://x.com/i/lists/123"
    assert channel_videos_url("@somechannel") == "https://www.youtube.com/@somechannel/videos"
    assert channel_videos_url("somechannel") == "https://www.youtube.com/@somechannel/videos"
    channel_id = "UC" + "a" * 22
    assert channel_videos_url(channel_id) == f"https://www.youtube.com/channel/{channel_id}/videos"


def test_author_handle_from_href():
    assert author_handle_from_href("/someone") == "@someone"
    assert author_handle_from_href("/someone/status/1") is None
    assert author_handle_from_href(None) is None
