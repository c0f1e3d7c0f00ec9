"""Timeline list crawl: navigate, confirm login, extract while persisting each step."""

import logging

from ..config import ExtractionConfig
from ..extraction.interception import ResponseBuffer
from ..extraction.parsing import timeline_url
from ..extraction.selectors import TARGET_HOSTS, TIMELINE_SELECTORS
from ..extraction.timeline import TimelineExtractor
from ..jobs import ResultSummary, TaskSpec
from ..runtime import BrowserSessionManager, ContextHandle, WaitPolicy
from ..storage import StorageService
from .progress import IncrementalSaver


class TimelineTask:
    """Posts from a timeline list, newest first."""

    @staticmethod
    async def run(*,
                  session: BrowserSessionManager,
                  handle: ContextHandle,
                  spec: TaskSpec,
                  storage: StorageService,
                  config: ExtractionConfig,
                  logger: logging.Logger) -> ResultSummary:
        page = handle.page
        buffer = ResponseBuffer(
            window_seconds=config.intercept_window_seconds,
            max_entries=config.intercept_max_entries,
            logger=logger,
        )
        # listen before navigating so media fetched by the first render is captured
        buffer.attach(page)
        try:
            url = timeline_url(spec.target_id)
            logger.info(f"Navigating to {url}")
            await session.navigate_to_url(page, url, WaitPolicy(wait_until="domcontentloaded"))
            await session.ensure_authenticated(page, TIMELINE_SELECTORS["login_markers"])
            session.ensure_on_target(page, TARGET_HOSTS["timeline"])
            await session.wait_for_content(page, TIMELINE_SELECTORS["post_container"])

            await session.auth_store.save_from_context(handle.context)

            saver = IncrementalSaver(storage, handle.task_id, logger)
            extractor = TimelineExtractor(page, config=config, buffer=buffer, logger=logger)
            result = await extractor.run(spec.target_id, spec.max_items, on_batch=saver)
        finally:
            buffer.detach(page)

        logger.info(f"Stored {saver.saved} posts ({saver.new_items} new)")
        return ResultSummary(
            item_count=result.item_count,
            new_item_count=saver.new_items,
            stop_reason=result.stop_reason,
            scroll_count=result.scroll_count,
            duplicates_skipped=result.duplicates_skipped,
        )
