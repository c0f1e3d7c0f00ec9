"""Task scheduler: bounded concurrency, cancellation, retries and zombie sweep.

One dispatcher coroutine pulls task ids off a FIFO queue and waits for a
concurrency slot before spawning the execution, so tasks start in submission
order. A slot is only given back after the task's browser context has been
torn down.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from .config import ExtractionConfig, SchedulerConfig
from .jobs import ACTIVE_STATUSES, ResultSummary, TaskRecord, TaskSpec, TaskStatus
from .metrics import CrawlMetrics
from .reliability.errors import (
    CrawlError,
    DuplicateActiveTask,
    ErrorContext,
    ErrorHandler,
    FailureReason,
    TaskTimeout,
    failure_reason_of,
)
from .runtime import BrowserSessionManager
from .storage import StorageService
from .tasks import TaskRegistry, task_registry

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


@dataclass
class ExecutionHandle:
    """In-memory state of one submitted task."""
    task_id: str
    spec: TaskSpec
    task: Optional[asyncio.Task] = None
    cancel_requested: bool = False
    slot_held: bool = False
    attempts: int = 0
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def dedup_key(self) -> Tuple:
        return self.spec.dedup_key


class ExecutionRegistry:
    """Concurrency slots, live handles, the dedup index and the FIFO queue.

    Owned by a single ``TaskScheduler``; nothing here is module-global.
    """

    def __init__(self, max_concurrency: int):
        self.max_concurrency = max_concurrency
        self._slots = asyncio.Semaphore(max_concurrency)
        self._handles: Dict[str, ExecutionHandle] = {}
        self._active_keys: Dict[Tuple, str] = {}
        self._running: Set[str] = set()
        self.queue: "asyncio.Queue[str]" = asyncio.Queue()

    def register(self, handle: ExecutionHandle) -> None:
        existing = self._active_keys.get(handle.dedup_key)
        if existing is not None:
            raise DuplicateActiveTask(
                f"Task {existing} is already active for {handle.spec.task_type.value} {handle.spec.target_id}",
                active_task_id=existing,
            )
        self._active_keys[handle.dedup_key] = handle.task_id
        self._handles[handle.task_id] = handle

    def get(self, task_id: str) -> Optional[ExecutionHandle]:
        return self._handles.get(task_id)

    def handles(self):
        return list(self._handles.values())

    async def acquire_slot(self, handle: ExecutionHandle) -> None:
        await self._slots.acquire()
        handle.slot_held = True
        self._running.add(handle.task_id)

    def release_slot(self, handle: ExecutionHandle) -> None:
        """Give the slot back. Safe to call more than once."""
        if handle.slot_held:
            handle.slot_held = False
            self._running.discard(handle.task_id)
            self._slots.release()

    def release(self, handle: ExecutionHandle) -> None:
        """Forget a finished handle and free its dedup key. Idempotent."""
        self.release_slot(handle)
        if self._handles.get(handle.task_id) is handle:
            del self._handles[handle.task_id]
        if self._active_keys.get(handle.dedup_key) == handle.task_id:
            del self._active_keys[handle.dedup_key]
        handle.done.set()

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return sum(1 for h in self._handles.values() if not h.slot_held and not h.cancel_requested)


class TaskScheduler:
    """Runs crawl tasks under a fixed concurrency ceiling."""

    def __init__(self,
                 *,
                 storage: StorageService,
                 session: BrowserSessionManager,
                 config: SchedulerConfig,
                 extraction_config: ExtractionConfig,
                 data_root: str,
                 registry: TaskRegistry = task_registry,
                 metrics: Optional[CrawlMetrics] = None,
                 logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.session = session
        self.config = config
        self.extraction_config = extraction_config
        self.data_root = data_root
        self.task_registry = registry
        self.metrics = metrics or CrawlMetrics()
        self.logger = (logger or logging.getLogger("crawlcore")).getChild("scheduler")
        self.error_handler = ErrorHandler(self.logger)

        self.executions = ExecutionRegistry(config.max_concurrent_tasks)
        self._dispatcher: Optional[asyncio.Task] = None
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        swept = await self.force_cleanup_zombie_tasks()
        if swept["count"]:
            self.logger.warning(f"Marked {swept['count']} tasks from a previous run as orphaned")
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="crawl-dispatcher")
        if self.config.zombie_sweep_interval_seconds > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="crawl-zombie-sweep")
        self.logger.info(f"Scheduler started (max concurrency {self.executions.max_concurrency})")

    async def stop(self) -> None:
        """Stop dispatching and tear down every live execution."""
        self.logger.info("Stopping scheduler")
        for background in (self._dispatcher, self._sweeper):
            if background:
                background.cancel()
        await asyncio.gather(*(t for t in (self._dispatcher, self._sweeper) if t), return_exceptions=True)
        self._dispatcher = self._sweeper = None

        handles = self.executions.handles()
        for handle in handles:
            if handle.task:
                handle.task.cancel()
        tasks = [h.task for h in handles if h.task]
        if tasks:
            await asyncio.wait(tasks, timeout=self.config.cancel_grace_seconds)
        for handle in handles:
            if handle.done.is_set():
                continue
            await self._finalize(handle, TaskStatus.FAILED,
                                 ResultSummary.failure(FailureReason.ORPHANED, "Scheduler shut down",
                                                       attempts=handle.attempts))
        self.logger.info("Scheduler stopped")

    # ------------------------------------------------------------------ operations

    async def submit(self, spec: TaskSpec, *, retry_of: Optional[str] = None) -> str:
        """Register, persist and enqueue a task. Raises ``DuplicateActiveTask``."""
        handle = ExecutionHandle(task_id=StorageService.new_task_id(), spec=spec)
        self.executions.register(handle)
        try:
            await self.storage.create_task(spec, retry_of=retry_of, task_id=handle.task_id)
            await self.storage.update_task_status(handle.task_id, TaskStatus.QUEUED)
        except BaseException:
            self.executions.release(handle)
            raise

        self.executions.queue.put_nowait(handle.task_id)
        self.metrics.queued_tasks.set(self.executions.queued_count)
        self.logger.info(f"Queued {spec.task_type.value} task {handle.task_id} for {spec.target_id}")
        return handle.task_id

    async def cancel(self, task_id: str) -> TaskRecord:
        """Cancel a task; terminal tasks are returned unchanged.

        Queued tasks become ``cancelled``. Running tasks get the grace period to
        tear down their context, then the browser process is killed; either way
        they end ``failed`` with ``UserCancelled``.
        """
        record = await self.storage.get_task(task_id)
        if record is None:
            raise KeyError(f"Task {task_id} not found")
        if record.is_terminal:
            return record

        summary_message = "Cancelled by user"
        handle = self.executions.get(task_id)
        if handle is None:
            status = TaskStatus.FAILED if record.status == TaskStatus.RUNNING else TaskStatus.CANCELLED
            return await self.storage.update_task_status(
                task_id, status, ResultSummary.failure(FailureReason.USER_CANCELLED, summary_message)
            )

        handle.cancel_requested = True
        if handle.task is None:
            self.logger.info(f"Cancelling queued task {task_id}")
            await self._finalize(handle, TaskStatus.CANCELLED,
                                 ResultSummary.failure(FailureReason.USER_CANCELLED, summary_message))
            return await self.storage.get_task(task_id)

        self.logger.info(f"Cancelling running task {task_id}")
        handle.task.cancel()
        done, _ = await asyncio.wait({handle.task}, timeout=self.config.cancel_grace_seconds)
        if not done:
            self.logger.error(
                f"Task {task_id} did not stop within {self.config.cancel_grace_seconds}s, killing browser"
            )
            await self.session.force_kill()
        if not handle.done.is_set():
            await self._finalize(handle, TaskStatus.FAILED,
                                 ResultSummary.failure(FailureReason.USER_CANCELLED, summary_message,
                                                       attempts=handle.attempts))
        return await self.storage.get_task(task_id)

    def get_status(self) -> Dict[str, int]:
        return {
            "running_count": self.executions.running_count,
            "max_concurrency": self.executions.max_concurrency,
        }

    def get_stats(self) -> Dict[str, object]:
        return {
            **self.get_status(),
            "queued_count": self.executions.queued_count,
            "active_contexts": self.session.active_context_count,
            "errors": self.error_handler.get_error_stats(),
        }

    async def force_cleanup_zombie_tasks(self) -> Dict[str, int]:
        """Fail active records that no live execution owns."""
        count = 0
        for record in await self.storage.list_tasks(limit=0):
            if record.status not in ACTIVE_STATUSES or self.executions.get(record.task_id):
                continue
            summary = ResultSummary.failure(FailureReason.ORPHANED, "No live execution owns this task")
            updated = await self.storage.update_task_status(record.task_id, TaskStatus.FAILED, summary)
            if updated.error_kind == FailureReason.ORPHANED:
                count += 1
                self.logger.warning(f"Task {record.task_id} was {record.status.value} with no owner; marked orphaned")
        return {"count": count}

    async def wait_for(self, task_id: str, timeout: Optional[float] = None) -> Optional[TaskRecord]:
        """Wait until a task leaves the scheduler, then return its record."""
        handle = self.executions.get(task_id)
        if handle is not None:
            await asyncio.wait_for(handle.done.wait(), timeout=timeout)
        return await self.storage.get_task(task_id)

    # ------------------------------------------------------------------ internals

    async def _dispatch_loop(self) -> None:
        while True:
            task_id = await self.executions.queue.get()
            handle = self.executions.get(task_id)
            if handle is None or handle.cancel_requested:
                continue

            await self.executions.acquire_slot(handle)
            if handle.cancel_requested or self.executions.get(task_id) is not handle:
                self.executions.release_slot(handle)
                continue

            handle.task = asyncio.create_task(self._execute(handle), name=f"crawl-{task_id}")
            self.metrics.running_tasks.set(self.executions.running_count)
            self.metrics.queued_tasks.set(self.executions.queued_count)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.zombie_sweep_interval_seconds)
            try:
                await self.force_cleanup_zombie_tasks()
            except Exception as e:
                self.logger.error(f"Zombie sweep failed: {e}")

    async def _execute(self, handle: ExecutionHandle) -> None:
        spec = handle.spec
        task_dir = os.path.join(self.data_root, spec.task_type.value, handle.task_id)
        os.makedirs(task_dir, exist_ok=True)
        task_logger = self._setup_task_logger(handle.task_id, task_dir)
        started = time.monotonic()

        status = TaskStatus.FAILED
        summary: Optional[ResultSummary] = None
        try:
            summary = await asyncio.wait_for(
                self._run_attempts(handle, task_logger), timeout=self.config.task_timeout_seconds
            )
            status = TaskStatus.COMPLETED
        except asyncio.TimeoutError:
            error = TaskTimeout(f"Task exceeded {self.config.task_timeout_seconds}s")
            self.error_handler.handle_error(error)
            summary = ResultSummary.failure(error.reason, error.message, attempts=handle.attempts)
        except asyncio.CancelledError:
            reason = FailureReason.USER_CANCELLED if handle.cancel_requested else FailureReason.ORPHANED
            task_logger.warning(f"Task cancelled ({reason.value})")
            summary = ResultSummary.failure(reason, "Task cancelled", attempts=handle.attempts)
            raise
        except Exception as e:
            context = ErrorContext(task_id=handle.task_id, task_type=spec.task_type.value,
                                   target_id=spec.target_id, attempt_number=handle.attempts,
                                   max_attempts=self.config.max_task_retries + 1)
            enhanced = self.error_handler.handle_error(e, context)
            task_logger.error(f"Task failed: {enhanced.message}")
            summary = ResultSummary.failure(failure_reason_of(enhanced), enhanced.message, attempts=handle.attempts)
        finally:
            # the context is already closed here, so the slot can go
            await self._finalize(handle, status, summary)
            duration = time.monotonic() - started
            self.metrics.task_duration.labels(task_type=spec.task_type.value).observe(duration)
            task_logger.info(f"Task finished as {status.value} after {duration:.1f}s")
            self._teardown_task_logger(task_logger)

    async def _run_attempts(self, handle: ExecutionHandle, task_logger: logging.Logger) -> ResultSummary:
        spec = handle.spec
        registered = self.task_registry.get(spec.task_type)
        max_attempts = self.config.max_task_retries + 1

        while True:
            handle.attempts += 1
            try:
                async with self.session.context(handle.task_id, require_auth=registered.requires_auth,
                                                close_timeout=self.config.cancel_grace_seconds) as ctx:
                    if handle.attempts == 1:
                        await self.storage.update_task_status(handle.task_id, TaskStatus.RUNNING)
                    task_logger.info(f"Attempt {handle.attempts}/{max_attempts} for {spec.target_id}")
                    summary = await registered.runner(
                        session=self.session,
                        handle=ctx,
                        spec=spec,
                        storage=self.storage,
                        config=self.extraction_config,
                        logger=task_logger,
                    )
                summary.attempts = handle.attempts
                return summary
            except Exception as e:
                error = self.error_handler.classify(e)
                if not (isinstance(error, CrawlError) and error.retryable) or handle.attempts >= max_attempts:
                    if error is e:
                        raise
                    raise error from e
                self.metrics.task_retries_total.labels(task_type=spec.task_type.value, reason=error.reason.value).inc()
                task_logger.warning(f"{error.reason.value}: {error.message}; retrying with a fresh context")
                await asyncio.sleep(self.config.retry_delay_seconds)

    async def _finalize(self, handle: ExecutionHandle, status: TaskStatus,
                        summary: Optional[ResultSummary]) -> None:
        """Write the terminal status, then give back the slot and dedup key."""
        try:
            record = await self.storage.update_task_status(handle.task_id, status, summary)
        except KeyError:
            record = None
            self.logger.warning(f"Task {handle.task_id} vanished from storage before finishing")
        finally:
            self.executions.release(handle)
            self.metrics.running_tasks.set(self.executions.running_count)
            self.metrics.queued_tasks.set(self.executions.queued_count)

        if record is not None and record.status == status:
            task_type = handle.spec.task_type.value
            self.metrics.tasks_total.labels(task_type=task_type, status=status.value).inc()
            if status == TaskStatus.COMPLETED and summary is not None:
                self.metrics.extracted_items_total.labels(task_type=task_type).inc(summary.item_count)
            elif summary is not None and summary.error_kind is not None:
                self.metrics.task_failures_total.labels(task_type=task_type, reason=summary.error_kind.value).inc()

    def _setup_task_logger(self, task_id: str, task_dir: str) -> logging.Logger:
        """Dedicated logger writing to the task's own log file."""
        task_logger = logging.getLogger(f"crawlcore.task.{task_id}")
        for handler in task_logger.handlers[:]:
            task_logger.removeHandler(handler)

        fh = logging.FileHandler(os.path.join(task_dir, "task.log"))
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        task_logger.addHandler(fh)
        task_logger.setLevel(logging.INFO)
        return task_logger

    @staticmethod
    def _teardown_task_logger(task_logger: logging.Logger) -> None:
        for handler in task_logger.handlers[:]:
            task_logger.removeHandler(handler)
            handler.close()
