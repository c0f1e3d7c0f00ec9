"""Network-response capture for media URLs the DOM does not expose.

The timeline lazy-loads video assets, so the playable ``.mp4`` only appears in
network traffic. ``ResponseBuffer`` keeps a bounded, time-windowed record of
matching responses; the extractor polls it once per pagination step and asks a
``MediaPairer`` for the asset that belongs to a video node.
"""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from .records import MediaPair

VIDEO_URL_PATTERN = re.compile(r"video\.twimg\.com/.*?(?:amplify_video|ext_tw_video)/(\d+)/.*?\.mp4")
PREVIEW_URL_PATTERN = re.compile(r"(?:amplify_video_thumb|ext_tw_video_thumb)/(\d+)/.*?\.(?:jpg|jpeg|png|webp)")


@dataclass
class CapturedMedia:
    media_id: str
    kind: str  # "video" | "preview"
    url: str
    captured_at: float


def classify_media_url(url: str) -> Optional[tuple]:
    """Return ``(kind, media_id, clean_url)`` for media URLs, ``None`` otherwise."""
    match = VIDEO_URL_PATTERN.search(url)
    if match:
        return "video", match.group(1), url.split("?")[0]
    match = PREVIEW_URL_PATTERN.search(url)
    if match:
        return "preview", match.group(1), url
    return None


def media_id_from_poster(poster_url: Optional[str]) -> Optional[str]:
    if not poster_url:
        return None
    match = PREVIEW_URL_PATTERN.search(poster_url)
    return match.group(1) if match else None


class ResponseBuffer:
    """Bounded, time-windowed buffer of intercepted media responses."""

    def __init__(self,
                 *,
                 window_seconds: float = 15,
                 max_entries: int = 500,
                 clock: Callable[[], float] = time.monotonic,
                 logger: Optional[logging.Logger] = None):
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Deque[CapturedMedia] = deque(maxlen=max_entries)
        self._step_started = clock()
        self.logger = logger or logging.getLogger(__name__)

    def attach(self, page) -> None:
        page.on("response", self._on_response)

    def detach(self, page) -> None:
        page.remove_listener("response", self._on_response)

    def _on_response(self, response) -> None:
        self.record(response.url)

    def record(self, url: str) -> Optional[CapturedMedia]:
        classified = classify_media_url(url)
        if not classified:
            return None
        kind, media_id, clean_url = classified
        entry = CapturedMedia(media_id=media_id, kind=kind, url=clean_url, captured_at=self._clock())
        self._entries.append(entry)
        self.logger.debug(f"Captured {kind} for media {media_id}")
        return entry

    def mark_step(self) -> None:
        """Start a new pagination step; older entries count as background."""
        self._step_started = self._clock()

    def window(self) -> List[CapturedMedia]:
        """Entries still inside the time window, oldest first."""
        cutoff = self._clock() - self.window_seconds
        while self._entries and self._entries[0].captured_at < cutoff:
            self._entries.popleft()
        return list(self._entries)

    @property
    def step_started(self) -> float:
        return self._step_started

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class _Candidate:
    media_id: str
    preview_url: Optional[str] = None
    video_url: Optional[str] = None
    last_seen: float = 0.0


class MediaPairer:
    """Assigns captured preview/video pairs to video nodes, each pair at most once.

    A node whose poster URL carries a media id is matched by id. Otherwise the
    most recently captured unclaimed pair wins, preferring pairs seen during
    the current pagination step.
    """

    def __init__(self, buffer: ResponseBuffer):
        self.buffer = buffer
        self._claimed: set = set()

    def _candidates(self) -> Dict[str, _Candidate]:
        candidates: Dict[str, _Candidate] = {}
        for entry in self.buffer.window():
            candidate = candidates.setdefault(entry.media_id, _Candidate(media_id=entry.media_id))
            if entry.kind == "video":
                candidate.video_url = entry.url
            else:
                candidate.preview_url = entry.url
            candidate.last_seen = max(candidate.last_seen, entry.captured_at)
        return candidates

    def pair(self, poster_url: Optional[str] = None) -> Optional[MediaPair]:
        candidates = self._candidates()

        media_id = media_id_from_poster(poster_url)
        if media_id:
            self._claimed.add(media_id)
            candidate = candidates.get(media_id)
            return MediaPair(
                media_id=media_id,
                preview_url=(candidate.preview_url if candidate and candidate.preview_url else poster_url),
                video_url=candidate.video_url if candidate else None,
            )

        unclaimed = [c for c in candidates.values() if c.media_id not in self._claimed and c.video_url]
        if not unclaimed:
            return None
        recent = [c for c in unclaimed if c.last_seen >= self.buffer.step_started] or unclaimed
        chosen = max(recent, key=lambda c: c.last_seen)
        self._claimed.add(chosen.media_id)
        return MediaPair(media_id=chosen.media_id, preview_url=chosen.preview_url, video_url=chosen.video_url)

    @property
    def claimed_count(self) -> int:
        return len(self._claimed)
