"""Incremental extraction of a channel's video listing.

The listing is newest first. A run stops once ``stop_on_duplicate_count``
consecutive videos are already known to storage, so re-crawls only read the
content published since the previous run.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..config import ExtractionConfig
from ..jobs import StopReason
from .base import BatchSink, ScrollPaginator
from .parsing import CHANNEL_BASE_URL, absolute_url, extract_video_id, parse_count
from .records import ExtractedRecord, ExtractionResult, MediaPair
from .selectors import CHANNEL_SELECTORS, SCRAPE_CHANNEL_JS


def parse_video_node(raw: Dict[str, Any], target_id: str, channel_name: Optional[str] = None) -> Optional[ExtractedRecord]:
    video_id = extract_video_id(raw.get("href")) or extract_video_id(raw.get("class_name"))
    if not video_id:
        return None

    metadata = [m for m in (raw.get("metadata") or []) if m]
    views = next((m for m in metadata if "view" in m.lower()), None)
    published = next((m for m in metadata if m is not views), None)
    thumbnail = raw.get("thumbnail")

    handle = target_id if target_id.startswith("@") or target_id.startswith("UC") else f"@{target_id}"
    return ExtractedRecord(
        id=video_id,
        kind="video",
        target_id=target_id,
        url=absolute_url(raw.get("href"), CHANNEL_BASE_URL) or f"{CHANNEL_BASE_URL}/watch?v={video_id}",
        author_name=channel_name,
        author_handle=handle,
        content=raw.get("title") or "",
        view_count=parse_count(views),
        image_urls=[thumbnail] if thumbnail else [],
        video=MediaPair(media_id=video_id, preview_url=thumbnail) if thumbnail else None,
        duration=raw.get("duration"),
        published_at=published,
    )


class ChannelExtractor:
    """Reads a channel listing until quota, duplicate threshold, feed end or budget."""

    def __init__(self,
                 page,
                 *,
                 config: ExtractionConfig,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        self.page = page
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.paginator = ScrollPaginator(
            page, config=config, max_scrolls=config.channel_max_scrolls,
            logger=self.logger, clock=clock, rng=rng,
        )

    async def run(self,
                  target_id: str,
                  max_items: int,
                  *,
                  existing_ids: Iterable[str],
                  stop_on_duplicate_count: int,
                  on_batch: Optional[BatchSink] = None) -> ExtractionResult:
        known: Set[str] = set(existing_ids)
        seen: set = set()
        records: List[ExtractedRecord] = []
        consecutive_known = 0
        duplicates = 0
        stop_reason: Optional[StopReason] = None

        while stop_reason is None:
            snapshot = await self.page.evaluate(SCRAPE_CHANNEL_JS, CHANNEL_SELECTORS) or {}
            channel_name = snapshot.get("channel_name")
            batch: List[ExtractedRecord] = []
            newly_seen = 0

            for raw in snapshot.get("items") or []:
                record = parse_video_node(raw, target_id, channel_name)
                if record is None or record.id in seen:
                    continue
                seen.add(record.id)
                newly_seen += 1

                if record.id in known:
                    consecutive_known += 1
                    duplicates += 1
                    if consecutive_known >= stop_on_duplicate_count:
                        stop_reason = StopReason.DUPLICATE_THRESHOLD
                        break
                    continue

                consecutive_known = 0
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
                f"Step {self.paginator.scroll_count}: +{len(batch)} videos, {len(records)}/{max_items} total, "
                f"{consecutive_known} consecutive known"
            )

            if self.paginator.record_step(newly_seen):
                stop_reason = StopReason.FEED_EXHAUSTED
            elif self.paginator.budget_exceeded():
                stop_reason = StopReason.TIME_BUDGET_EXCEEDED
            elif self.paginator.scrolls_exhausted():
                stop_reason = StopReason.MAX_SCROLLS_REACHED
            elif not await self.paginator.scroll():
                stop_reason = StopReason.FEED_EXHAUSTED
            else:
                await self.paginator.pause()

        self.logger.info(f"Channel {target_id} finished: {len(records)} new videos, stop reason {stop_reason.value}")
        return ExtractionResult(
            records=records,
            stop_reason=stop_reason,
            scroll_count=self.paginator.scroll_count,
            duplicates_skipped=duplicates,
            elapsed_seconds=self.paginator.elapsed,
        )
