from __future__ import annotations

import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..jobs import StopReason, utcnow


class MediaPair(BaseModel):
    """Video preview image and playable file recovered from network traffic."""
    media_id: Optional[str] = None
    preview_url: Optional[str] = None
    video_url: Optional[str] = None


class ExtractedRecord(BaseModel):
    """A normalized timeline post or channel video."""

    id: str
    kind: str  # "post" | "video"
    target_id: str
    url: Optional[str] = None
    author_name: Optional[str] = None
    author_handle: Optional[str] = None
    author_avatar: Optional[str] = None
    content: str = ""
    reply_count: int = 0
    repost_count: int = 0
    like_count: int = 0
    view_count: int = 0
    image_urls: List[str] = Field(default_factory=list)
    video: Optional[MediaPair] = None
    duration: Optional[str] = None
    is_repost: bool = False
    is_reply: bool = False
    truncated: bool = False
    published_at: Optional[str] = None
    scraped_at: datetime.datetime = Field(default_factory=utcnow)


class ExtractionResult(BaseModel):
    records: List[ExtractedRecord] = Field(default_factory=list)
    stop_reason: StopReason
    scroll_count: int = 0
    duplicates_skipped: int = 0
    elapsed_seconds: float = 0.0

    @property
    def item_count(self) -> int:
        return len(self.records)
