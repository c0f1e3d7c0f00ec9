# Task runners for the crawl families
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from ..config import ExtractionConfig
from ..jobs import ResultSummary, TaskSpec, TaskType
from ..runtime import BrowserSessionManager, ContextHandle
from ..storage import StorageService
from .channel import ChannelTask
from .timeline import TimelineTask

TaskRunner = Callable[..., Awaitable[ResultSummary]]


@dataclass(frozen=True)
class RegisteredTask:
    runner: TaskRunner
    requires_auth: bool


# Task registry system
class TaskRegistry:
    def __init__(self) -> None:
        self._tasks: Dict[TaskType, RegisteredTask] = {}

    def register(self, task_type: TaskType, *, requires_auth: bool):
        def deco(fn):
            self._tasks[task_type] = RegisteredTask(runner=fn, requires_auth=requires_auth)
            return fn
        return deco

    def get(self, task_type: TaskType) -> RegisteredTask:
        try:
            return self._tasks[task_type]
        except KeyError:
            raise KeyError(f"No runner registered for task type {task_type!r}") from None

    @property
    def tasks(self) -> Dict[TaskType, RegisteredTask]:
        return self._tasks


_registry = TaskRegistry()


@_registry.register(TaskType.TIMELINE, requires_auth=True)
async def timeline(*, session: BrowserSessionManager, handle: ContextHandle, spec: TaskSpec,
                   storage: StorageService, config: ExtractionConfig, logger: logging.Logger) -> ResultSummary:
    return await TimelineTask.run(session=session, handle=handle, spec=spec, storage=storage,
                                  config=config, logger=logger)


@_registry.register(TaskType.CHANNEL, requires_auth=False)
async def channel(*, session: BrowserSessionManager, handle: ContextHandle, spec: TaskSpec,
                  storage: StorageService, config: ExtractionConfig, logger: logging.Logger) -> ResultSummary:
    return await ChannelTask.run(session=session, handle=handle, spec=spec, storage=storage,
                                 config=config, logger=logger)


# Exports for the scheduler
task_registry = _registry

__all__ = [
    "ChannelTask",
    "RegisteredTask",
    "TaskRegistry",
    "TimelineTask",
    "task_registry",
]
