"""Single entry point over validation, storage and the scheduler."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .auth_state import AuthStateStore
from .jobs import TaskRecord, TaskSpec, TaskStatus, TaskType
from .reliability.errors import ValidationError
from .storage import StorageService
from .workers import TaskScheduler

CLEANUP_DAYS_LIMITS = (1, 365)


class UnifiedTaskManager:
    """Facade used by the HTTP layer; callers never touch the scheduler directly."""

    def __init__(self,
                 *,
                 scheduler: TaskScheduler,
                 storage: StorageService,
                 auth_store: AuthStateStore,
                 logger: Optional[logging.Logger] = None):
        self.scheduler = scheduler
        self.storage = storage
        self.auth_store = auth_store
        self.logger = (logger or logging.getLogger("crawlcore")).getChild("manager")

    async def submit_timeline_task(self, target_id: str, max_items: Optional[int] = None) -> str:
        spec = TaskSpec.build(task_type=TaskType.TIMELINE, target_id=target_id, max_items=max_items)
        return await self.scheduler.submit(spec)

    async def submit_channel_task(self,
                                  target_id: str,
                                  max_items: Optional[int] = None,
                                  stop_on_duplicate_count: Optional[int] = None) -> str:
        spec = TaskSpec.build(
            task_type=TaskType.CHANNEL,
            target_id=target_id,
            max_items=max_items,
            stop_on_duplicate_count=stop_on_duplicate_count,
        )
        return await self.scheduler.submit(spec)

    async def cancel_task(self, task_id: str) -> TaskRecord:
        return await self.scheduler.cancel(task_id)

    def get_executor_status(self) -> Dict[str, int]:
        return self.scheduler.get_status()

    async def force_cleanup_zombie_tasks(self) -> Dict[str, int]:
        return await self.scheduler.force_cleanup_zombie_tasks()

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        return await self.storage.get_task(task_id)

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100) -> List[TaskRecord]:
        return await self.storage.list_tasks(status=status, limit=limit)

    async def retry_task(self, task_id: str) -> str:
        """Resubmit a finished task's parameters as a new task."""
        record = await self.storage.get_task(task_id)
        if record is None:
            raise KeyError(f"Task {task_id} not found")
        if not record.is_terminal:
            raise ValidationError(f"Task {task_id} is still {record.status.value}")
        new_id = await self.scheduler.submit(record.spec, retry_of=task_id)
        self.logger.info(f"Task {task_id} resubmitted as {new_id}")
        return new_id

    async def cleanup_old_tasks(self, older_than_days: int) -> int:
        low, high = CLEANUP_DAYS_LIMITS
        if not low <= older_than_days <= high:
            raise ValidationError(f"older_than_days must be between {low} and {high}")
        return await self.storage.cleanup_old_tasks(older_than_days)

    async def get_stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {status.value: 0 for status in TaskStatus}
        for record in await self.storage.list_tasks(limit=0):
            by_status[record.status.value] += 1
        return {
            "executor": self.scheduler.get_stats(),
            "tasks": by_status,
            "browser": self.scheduler.session.health_check(),
            "auth_state": self.auth_store.status(),
        }
