"""Incremental channel crawl that stops at already-stored videos."""

import logging

from ..config import ExtractionConfig
from ..extraction.channel import ChannelExtractor
from ..extraction.parsing import channel_videos_url
from ..extraction.selectors import CHANNEL_SELECTORS, TARGET_HOSTS
from ..jobs import ResultSummary, TaskSpec
from ..runtime import BrowserSessionManager, ContextHandle, WaitPolicy
from ..storage import StorageService
from .progress import IncrementalSaver


class ChannelTask:

    @staticmethod
    async def run(*,
                  session: BrowserSessionManager,
                  handle: ContextHandle,
                  spec: TaskSpec,
                  storage: StorageService,
                  config: ExtractionConfig,
                  logger: logging.Logger) -> ResultSummary:
        existing_ids = await storage.get_existing_ids(spec.target_id, "video")
        logger.info(f"{len(existing_ids)} videos already stored for {spec.target_id}")

        page = handle.page
        url = channel_videos_url(spec.target_id)
        logger.info(f"Navigating to {url}")
        await session.navigate_to_url(
            page, url, WaitPolicy(content_selector=CHANNEL_SELECTORS["video_container"])
        )
        session.ensure_on_target(page, TARGET_HOSTS["channel"])

        saver = IncrementalSaver(storage, handle.task_id, logger)
        extractor = ChannelExtractor(page, config=config, logger=logger)
        result = await extractor.run(
            spec.target_id,
            spec.max_items,
            existing_ids=existing_ids,
            stop_on_duplicate_count=spec.stop_on_duplicate_count,
            on_batch=saver,
        )

        logger.info(f"Stored {saver.saved} videos ({saver.new_items} new)")
        return ResultSummary(
            item_count=result.item_count,
            new_item_count=saver.new_items,
            stop_reason=result.stop_reason,
            scroll_count=result.scroll_count,
            duplicates_skipped=result.duplicates_skipped,
        )
