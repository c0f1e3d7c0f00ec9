"""Storage service for task records and extracted entities.

The core talks to persistence only through ``StorageService``. Two backends
ship with the package: an in-process store used by tests and single-node
deployments, and a Redis store that survives restarts (which is what makes
the zombie sweep necessary in the first place).

Status writes are monotonic: once a record is terminal, later writes are
ignored, so a late completion can never overwrite a cancellation.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set, Tuple

import redis.asyncio as redis

from .extraction.records import ExtractedRecord
from .jobs import TERMINAL_STATUSES, ResultSummary, TaskRecord, TaskSpec, TaskStatus, utcnow
from .reliability.errors import StorageFailure


class StorageService(ABC):
    """Persistence contract consumed by the scheduler and extractors."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def create_task(self, spec: TaskSpec, *, retry_of: Optional[str] = None,
                          task_id: Optional[str] = None) -> str:
        """Persist a ``created`` record for ``spec`` and return its id."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        ...

    @abstractmethod
    async def _put_task(self, record: TaskRecord) -> None:
        ...

    @abstractmethod
    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100) -> List[TaskRecord]:
        """Most recent first."""

    @abstractmethod
    async def delete_task(self, task_id: str) -> None:
        ...

    @abstractmethod
    async def get_existing_ids(self, target_id: str, kind: str) -> Set[str]:
        ...

    @abstractmethod
    async def save_entities(self, records: Iterable[ExtractedRecord]) -> int:
        """Upsert records; returns how many ids were not stored before."""

    async def update_task_status(self,
                                 task_id: str,
                                 status: TaskStatus,
                                 summary: Optional[ResultSummary] = None) -> Optional[TaskRecord]:
        record = await self.get_task(task_id)
        if record is None:
            raise KeyError(f"Task {task_id} not found")

        if record.is_terminal:
            self.logger.warning(
                f"Ignoring {status.value} for task {task_id}: already {record.status.value}"
            )
            return record

        record.status = status
        now = utcnow()
        if status == TaskStatus.RUNNING and record.started_at is None:
            record.started_at = now
        if status in TERMINAL_STATUSES:
            record.completed_at = now
        if summary is not None:
            record.result_summary = summary

        await self._put_task(record)
        self.logger.info(f"Task {task_id} -> {status.value}")
        return record

    async def record_progress(self, task_id: str, items_saved: int) -> None:
        """Store the running count of persisted records. No-op once terminal."""
        record = await self.get_task(task_id)
        if record is None or record.is_terminal:
            return
        record.items_saved = items_saved
        await self._put_task(record)

    async def cleanup_old_tasks(self, older_than_days: int) -> int:
        """Delete terminal tasks finished more than ``older_than_days`` ago."""
        cutoff = utcnow() - datetime.timedelta(days=older_than_days)
        removed = 0
        for record in await self.list_tasks(limit=0):
            finished = record.completed_at or record.created_at
            if record.is_terminal and finished < cutoff:
                await self.delete_task(record.task_id)
                removed += 1
        if removed:
            self.logger.info(f"Removed {removed} tasks older than {older_than_days} days")
        return removed

    @staticmethod
    def new_task_id() -> str:
        return uuid.uuid4().hex


class InMemoryStorageService(StorageService):
    """Dictionary-backed store; state lives as long as the process."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self._tasks: Dict[str, TaskRecord] = {}
        self._entities: Dict[Tuple[str, str], ExtractedRecord] = {}
        self._ids_by_target: Dict[Tuple[str, str], Set[str]] = {}

    async def create_task(self, spec: TaskSpec, *, retry_of: Optional[str] = None,
                          task_id: Optional[str] = None) -> str:
        task_id = task_id or self.new_task_id()
        self._tasks[task_id] = TaskRecord.from_spec(task_id, spec, retry_of=retry_of)
        return task_id

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        record = self._tasks.get(task_id)
        return record.model_copy(deep=True) if record else None

    async def _put_task(self, record: TaskRecord) -> None:
        self._tasks[record.task_id] = record.model_copy(deep=True)

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100) -> List[TaskRecord]:
        records = sorted(self._tasks.values(), key=lambda r: r.created_at, reverse=True)
        if status is not None:
            records = [r for r in records if r.status == status]
        if limit:
            records = records[:limit]
        return [r.model_copy(deep=True) for r in records]

    async def delete_task(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)

    async def get_existing_ids(self, target_id: str, kind: str) -> Set[str]:
        return set(self._ids_by_target.get((target_id, kind), set()))

    async def save_entities(self, records: Iterable[ExtractedRecord]) -> int:
        inserted = 0
        for record in records:
            key = (record.kind, record.id)
            if key not in self._entities:
                inserted += 1
            self._entities[key] = record
            self._ids_by_target.setdefault((record.target_id, record.kind), set()).add(record.id)
        return inserted

    @property
    def entity_count(self) -> int:
        return len(self._entities)


class RedisStorageService(StorageService):
    """Redis-backed store surviving process restarts."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0",
                 logger: Optional[logging.Logger] = None,
                 client: Optional[redis.Redis] = None):
        super().__init__(logger)
        self.redis_url = redis_url
        self.redis_client: Optional[redis.Redis] = client

        self.task_key_pattern = "crawl:task:{task_id}"
        self.task_index_key = "crawl:tasks"
        self.entity_key_pattern = "crawl:entity:{kind}"
        self.target_ids_key_pattern = "crawl:ids:{kind}:{target_id}"

    async def connect(self) -> None:
        if self.redis_client is None:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
        await self.redis_client.ping()
        self.logger.info(f"Connected to Redis at {self.redis_url}")

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None

    @property
    def client(self) -> redis.Redis:
        if self.redis_client is None:
            raise RuntimeError("Redis storage is not connected")
        return self.redis_client

    async def create_task(self, spec: TaskSpec, *, retry_of: Optional[str] = None,
                          task_id: Optional[str] = None) -> str:
        task_id = task_id or self.new_task_id()
        record = TaskRecord.from_spec(task_id, spec, retry_of=retry_of)
        await self._put_task(record)
        await self.client.zadd(self.task_index_key, {task_id: record.created_at.timestamp()})
        return task_id

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        data = await self.client.get(self.task_key_pattern.format(task_id=task_id))
        if data:
            return TaskRecord.model_validate_json(data)
        return None

    async def _put_task(self, record: TaskRecord) -> None:
        await self.client.set(self.task_key_pattern.format(task_id=record.task_id), record.model_dump_json())

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100) -> List[TaskRecord]:
        task_ids = await self.client.zrevrange(self.task_index_key, 0, -1)
        records: List[TaskRecord] = []
        for task_id in task_ids:
            record = await self.get_task(task_id)
            if record is None:
                await self.client.zrem(self.task_index_key, task_id)
                continue
            if status is not None and record.status != status:
                continue
            records.append(record)
            if limit and len(records) >= limit:
                break
        return records

    async def delete_task(self, task_id: str) -> None:
        await self.client.delete(self.task_key_pattern.format(task_id=task_id))
        await self.client.zrem(self.task_index_key, task_id)

    async def get_existing_ids(self, target_id: str, kind: str) -> Set[str]:
        key = self.target_ids_key_pattern.format(kind=kind, target_id=target_id)
        try:
            return set(await self.client.smembers(key))
        except redis.RedisError as e:
            raise StorageFailure(f"Could not read known ids for {target_id}", cause=e) from e

    async def save_entities(self, records: Iterable[ExtractedRecord]) -> int:
        inserted = 0
        try:
            for record in records:
                entity_key = self.entity_key_pattern.format(kind=record.kind)
                if await self.client.hset(entity_key, record.id, record.model_dump_json()):
                    inserted += 1
                await self.client.sadd(
                    self.target_ids_key_pattern.format(kind=record.kind, target_id=record.target_id),
                    record.id,
                )
        except redis.RedisError as e:
            raise StorageFailure(f"Could not save extracted records ({inserted} written)", cause=e) from e
        return inserted


def create_storage(backend: str, *, redis_url: str, logger: Optional[logging.Logger] = None) -> StorageService:
    if backend == "redis":
        return RedisStorageService(redis_url=redis_url, logger=logger)
    return InMemoryStorageService(logger=logger)
