"""Helpers turning rendered page text and URLs into typed values."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

POST_ID_PATTERN = re.compile(r"/status/(\d+)")
VIDEO_ID_PATTERNS = (
    re.compile(r"content-id-([A-Za-z0-9_-]{11})"),
    re.compile(r"/shorts/([A-Za-z0-9_-]{11})"),
    re.compile(r"/embed/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtu\.be/([A-Za-z0-9_-]{11})"),
)
CHANNEL_ID_PATTERN = re.compile(r"^UC[A-Za-z0-9_-]{22}$")

_COUNT_PATTERN = re.compile(r"([\d.,]+)\s*([KMB])?", re.IGNORECASE)
_MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}

TIMELINE_BASE_URL = "https://x.com"
CHANNEL_BASE_URL = "https://www.youtube.com"


def parse_count(text: Optional[str]) -> int:
    """Parse abbreviated counters such as ``1.2K``, ``3M``, ``1,234`` or ``12 views``."""
    if not text:
        return 0
    match = _COUNT_PATTERN.search(text.strip().replace("\u00a0", " "))
    if not match:
        return 0

    number, suffix = match.groups()
    if suffix:
        number = number.replace(",", ".")
        try:
            return int(round(float(number) * _MULTIPLIERS[suffix.upper()]))
        except ValueError:
            return 0

    digits = number.replace(",", "").replace(".", "")
    return int(digits) if digits.isdigit() else 0


def extract_post_id(href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    match = POST_ID_PATTERN.search(href)
    return match.group(1) if match else None


def extract_video_id(value: Optional[str]) -> Optional[str]:
    """Find a video id in a watch/shorts/embed URL or a ``content-id-`` class."""
    if not value:
        return None

    query = parse_qs(urlparse(value).query)
    if query.get("v"):
        candidate = query["v"][0]
        if re.fullmatch(r"[A-Za-z0-9_-]{11}", candidate):
            return candidate

    for pattern in VIDEO_ID_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    return None


def absolute_url(href: Optional[str], base: str) -> Optional[str]:
    if not href:
        return None
    if href.startswith("http://") or href.startswith("https://"):
        return href
    return f"{base}{href if href.startswith('/') else '/' + href}"


def timeline_url(list_id: str) -> str:
    return f"{TIMELINE_BASE_URL}/i/lists/{list_id}"


def channel_videos_url(target: str) -> str:
    """``@handle`` and bare handles go to ``/@handle/videos``; ``UC…`` ids to ``/channel/<id>/videos``."""
    target = target.strip()
    if CHANNEL_ID_PATTERN.match(target):
        return f"{CHANNEL_BASE_URL}/channel/{target}/videos"
    handle = target if target.startswith("@") else f"@{target}"
    return f"{CHANNEL_BASE_URL}/{handle}/videos"


def author_handle_from_href(href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    path = urlparse(href).path.strip("/")
    if not path or "/" in path:
        return None
    return path if path.startswith("@") else f"@{path}"
