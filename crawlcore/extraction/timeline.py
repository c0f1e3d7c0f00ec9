"""Scroll-paginated extraction of a timeline list."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from ..config import ExtractionConfig
from ..jobs import StopReason
from .base import BatchSink, ScrollPaginator
from .interception import MediaPairer, ResponseBuffer
from .parsing import TIMELINE_BASE_URL, absolute_url, author_handle_from_href, extract_post_id, parse_count
from .records import ExtractedRecord, ExtractionResult
from .selectors import SCRAPE_TIMELINE_JS, TIMELINE_SELECTORS

REPOST_MARKERS = ("repost", "retweet")


def parse_post_node(raw: Dict[str, Any], target_id: str) -> Optional[ExtractedRecord]:
    """Normalize one scraped post node. Nodes without a status link are skipped."""
    post_id = extract_post_id(raw.get("href"))
    if not post_id:
        return None

    images: List[str] = []
    for src in raw.get("images") or []:
        if src and src not in images:
            images.append(src)

    social = (raw.get("social_context") or "").lower()
    return ExtractedRecord(
        id=post_id,
        kind="post",
        target_id=target_id,
        url=absolute_url(raw.get("href"), TIMELINE_BASE_URL),
        author_name=raw.get("author_name"),
        author_handle=author_handle_from_href(raw.get("author_href")),
        author_avatar=raw.get("author_avatar"),
        content=raw.get("text") or "",
        reply_count=parse_count(raw.get("reply")),
        repost_count=parse_count(raw.get("repost")),
        like_count=parse_count(raw.get("like")),
        view_count=parse_count(raw.get("views")),
        image_urls=images,
        is_repost=any(marker in social for marker in REPOST_MARKERS),
        is_reply=bool(raw.get("is_reply")),
        truncated=bool(raw.get("truncated")),
        published_at=raw.get("published_at"),
    )


class TimelineExtractor:
    """Walks a rendered timeline until quota, feed end, scroll cap or time budget."""

    def __init__(self,
                 page,
                 *,
                 config: ExtractionConfig,
                 buffer: Optional[ResponseBuffer] = None,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        self.page = page
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.buffer = buffer or ResponseBuffer(
            window_seconds=config.intercept_window_seconds,
            max_entries=config.intercept_max_entries,
            clock=clock,
            logger=self.logger,
        )
        self.pairer = MediaPairer(self.buffer)
        self.paginator = ScrollPaginator(
            page, config=config, max_scrolls=config.timeline_max_scrolls,
            logger=self.logger, clock=clock, rng=rng,
        )

    async def run(self, target_id: str, max_items: int, *, on_batch: Optional[BatchSink] = None) -> ExtractionResult:
        """Extract up to ``max_items`` posts.

        ``on_batch`` gets each step's new posts as soon as the step ends, so a
        caller can persist progress that survives a later failure.
        """
        seen: set = set()
        records: List[ExtractedRecord] = []
        duplicates = 0
        stop_reason: Optional[StopReason] = None

        while stop_reason is None:
            nodes = await self.page.evaluate(SCRAPE_TIMELINE_JS, TIMELINE_SELECTORS) or []
            batch: List[ExtractedRecord] = []
            newly_seen = 0

            for raw in nodes:
                record = parse_post_node(raw, target_id)
                if record is None:
                    continue
                if record.id in seen:
                    duplicates += 1
                    continue
                seen.add(record.id)
                newly_seen += 1

                if record.is_reply:
                    continue
                if raw.get("has_video"):
                    record.video = self.pairer.pair(raw.get("video_poster"))

                records.append(record)
                batch.append(record)
                if len(records) >= max_items:
                    stop_reason = StopReason.MAX_ITEMS_REACHED
                    break

            if batch and on_batch is not None:
                await on_batch(batch)
            if stop_reason:
                break

            self.logger.info(
                f"Step {self.paginator.scroll_count}: +{len(batch)} posts, {len(records)}/{max_items} total"
            )

            # skipped replies still count as the feed moving
            if self.paginator.record_step(newly_seen):
                stop_reason = StopReason.FEED_EXHAUSTED
            elif self.paginator.budget_exceeded():
                stop_reason = StopReason.TIME_BUDGET_EXCEEDED
            elif self.paginator.scrolls_exhausted():
                stop_reason = StopReason.MAX_SCROLLS_REACHED
            else:
                self.buffer.mark_step()
                if not await self.paginator.scroll():
                    stop_reason = StopReason.FEED_EXHAUSTED
                else:
                    await self.paginator.pause()

        self.logger.info(f"Timeline {target_id} finished: {len(records)} posts, stop reason {stop_reason.value}")
        return ExtractionResult(
            records=records,
            stop_reason=stop_reason,
            scroll_count=self.paginator.scroll_count,
            duplicates_skipped=duplicates,
            elapsed_seconds=self.paginator.elapsed,
        )
