from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, List, Optional

from ..config import ExtractionConfig
from .records import ExtractedRecord
from .selectors import SCROLL_JS

# receives the records a pagination step added, before the next scroll
BatchSink = Callable[[List[ExtractedRecord]], Awaitable[None]]


class ScrollPaginator:
    """Scrolls a page one step at a time and tracks the shared stop budgets.

    A step scrolls ``scroll_factor`` viewports. Moving less than
    ``min_scroll_delta_px`` counts as being stuck at the bottom of the feed.
    """

    def __init__(self,
                 page,
                 *,
                 config: ExtractionConfig,
                 max_scrolls: int,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        self.page = page
        self.config = config
        self.max_scrolls = max_scrolls
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._rng = rng or random.Random()
        self._started = clock()
        self.scroll_count = 0
        self.stuck_count = 0
        self.empty_steps = 0

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def budget_exceeded(self) -> bool:
        return self.elapsed >= self.config.time_budget_seconds

    def scrolls_exhausted(self) -> bool:
        return self.scroll_count >= self.max_scrolls

    def record_step(self, newly_seen: int) -> bool:
        """Count the nodes a step revealed; True once the empty-step limit is hit."""
        if newly_seen > 0:
            self.empty_steps = 0
        else:
            self.empty_steps += 1
        return self.empty_steps >= self.config.empty_scroll_limit

    async def scroll(self) -> bool:
        """Scroll one step. Returns False once the page stopped moving too often."""
        delta = await self.page.evaluate(SCROLL_JS, self.config.scroll_factor)
        self.scroll_count += 1
        if (delta or 0) < self.config.min_scroll_delta_px:
            self.stuck_count += 1
            self.logger.debug(f"Scroll {self.scroll_count} moved {delta}px (stuck {self.stuck_count})")
        else:
            self.stuck_count = 0
        return self.stuck_count < self.config.empty_scroll_limit

    async def pause(self) -> None:
        low, high = self.config.scroll_pause_min_ms, self.config.scroll_pause_max_ms
        await asyncio.sleep(self._rng.randint(low, high) / 1000.0)
