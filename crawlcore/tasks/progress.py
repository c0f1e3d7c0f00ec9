import logging
from typing import List

from ..extraction.records import ExtractedRecord
from ..storage import StorageService


class IncrementalSaver:
    """Batch sink that persists each pagination step as soon as it lands.

    Records saved here stay in storage even if the task later times out, is
    cancelled or runs out of retries.
    """

    def __init__(self, storage: StorageService, task_id: str, logger: logging.Logger):
        self.storage = storage
        self.task_id = task_id
        self.logger = logger
        self.saved = 0
        self.new_items = 0

    async def __call__(self, batch: List[ExtractedRecord]) -> None:
        self.new_items += await self.storage.save_entities(batch)
        self.saved += len(batch)
        await self.storage.record_progress(self.task_id, self.saved)
        self.logger.debug(f"Persisted {len(batch)} records ({self.saved} this attempt)")
