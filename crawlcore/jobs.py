"""Task specifications, persisted task records and their lifecycle.

A task moves ``created -> queued -> running -> completed | failed | cancelled``.
Only the scheduler writes status transitions; everything else reads records
through the storage service.
"""

from __future__ import annotations

import datetime
import re
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .reliability.errors import FailureReason, ValidationError


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class TaskType(str, Enum):
    TIMELINE = "timeline"
    CHANNEL = "channel"


class TaskStatus(str, Enum):
    """Task status with the lifecycle order of the scheduler."""
    CREATED = "created"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({TaskStatus.CREATED, TaskStatus.QUEUED, TaskStatus.RUNNING})


class StopReason(str, Enum):
    """Why an extraction run ended."""
    MAX_ITEMS_REACHED = "MaxItemsReached"
    FEED_EXHAUSTED = "FeedExhausted"
    MAX_SCROLLS_REACHED = "MaxScrollsReached"
    TIME_BUDGET_EXCEEDED = "TimeBudgetExceeded"
    DUPLICATE_THRESHOLD = "DuplicateThreshold"


LIST_ID_PATTERN = re.compile(r"^\d+$")
CHANNEL_HANDLE_PATTERN = re.compile(r"^@?[A-Za-z0-9._-]{1,100}$")

# (min, max, default) per task family
MAX_ITEMS_LIMITS = {
    TaskType.TIMELINE: (1, 100, 20),
    TaskType.CHANNEL: (1, 50, 20),
}
DUPLICATE_STOP_LIMITS = (1, 10, 3)


class TaskSpec(BaseModel):
    """Immutable description of a crawl request."""

    model_config = ConfigDict(frozen=True)

    task_type: TaskType
    target_id: str
    max_items: int = 20
    stop_on_duplicate_count: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("target_id"), str):
            data["target_id"] = data["target_id"].strip()
        try:
            task_type = TaskType(data.get("task_type"))
        except ValueError:
            return data
        if data.get("max_items") is None:
            data["max_items"] = MAX_ITEMS_LIMITS[task_type][2]
        if task_type == TaskType.CHANNEL and data.get("stop_on_duplicate_count") is None:
            data["stop_on_duplicate_count"] = DUPLICATE_STOP_LIMITS[2]
        return data

    @model_validator(mode="after")
    def _check_limits(self) -> "TaskSpec":
        if self.task_type == TaskType.TIMELINE:
            if not LIST_ID_PATTERN.match(self.target_id):
                raise ValueError(f"timeline target must be a numeric list id, got {self.target_id!r}")
            if self.stop_on_duplicate_count is not None:
                raise ValueError("stop_on_duplicate_count only applies to channel tasks")
        else:
            if not CHANNEL_HANDLE_PATTERN.match(self.target_id):
                raise ValueError(f"channel target must be a handle or channel id, got {self.target_id!r}")
            low, high, _ = DUPLICATE_STOP_LIMITS
            if not low <= self.stop_on_duplicate_count <= high:
                raise ValueError(f"stop_on_duplicate_count must be between {low} and {high}")

        low, high, _ = MAX_ITEMS_LIMITS[self.task_type]
        if not low <= self.max_items <= high:
            raise ValueError(f"max_items must be between {low} and {high} for {self.task_type.value} tasks")
        return self

    @classmethod
    def build(cls, **fields: Any) -> "TaskSpec":
        """Construct a spec, surfacing bad input as ``ValidationError``."""
        try:
            return cls(**fields)
        except PydanticValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise ValidationError(messages or "invalid task specification", cause=e) from e

    @property
    def dedup_key(self) -> tuple:
        return (self.task_type, self.target_id)


class ResultSummary(BaseModel):
    """Outcome of a task execution, stored on the record."""
    item_count: int = 0
    new_item_count: int = 0
    stop_reason: Optional[StopReason] = None
    scroll_count: int = 0
    duplicates_skipped: int = 0
    error_kind: Optional[FailureReason] = None
    error: Optional[str] = None
    attempts: int = 0

    @classmethod
    def failure(cls, reason: FailureReason, message: str, *, attempts: int = 0) -> "ResultSummary":
        return cls(error_kind=reason, error=message or reason.value, attempts=attempts)


class TaskRecord(BaseModel):
    """Persisted task state."""

    task_id: str
    task_type: TaskType
    target_id: str
    max_items: int
    stop_on_duplicate_count: Optional[int] = None
    status: TaskStatus = TaskStatus.CREATED
    created_at: datetime.datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None
    result_summary: Optional[ResultSummary] = None
    retry_of: Optional[str] = None
    # records persisted so far by the current attempt
    items_saved: int = 0

    @classmethod
    def from_spec(cls, task_id: str, spec: TaskSpec, *, retry_of: Optional[str] = None) -> "TaskRecord":
        return cls(
            task_id=task_id,
            task_type=spec.task_type,
            target_id=spec.target_id,
            max_items=spec.max_items,
            stop_on_duplicate_count=spec.stop_on_duplicate_count,
            retry_of=retry_of,
        )

    @property
    def spec(self) -> TaskSpec:
        return TaskSpec(
            task_type=self.task_type,
            target_id=self.target_id,
            max_items=self.max_items,
            stop_on_duplicate_count=self.stop_on_duplicate_count,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def error_kind(self) -> Optional[FailureReason]:
        return self.result_summary.error_kind if self.result_summary else None

    @property
    def error(self) -> Optional[str]:
        return self.result_summary.error if self.result_summary else None

    @property
    def attempts(self) -> int:
        return self.result_summary.attempts if self.result_summary else 0

    @property
    def status_with_elapsed(self) -> str:
        """Return status with elapsed time for running tasks."""
        if self.status != TaskStatus.RUNNING or not self.started_at:
            return self.status.value

        elapsed_seconds = int((utcnow() - self.started_at).total_seconds())

        if elapsed_seconds < 60:
            return f"running {elapsed_seconds}s"
        elif elapsed_seconds < 3600:
            return f"running {elapsed_seconds // 60}m {elapsed_seconds % 60}s"
        else:
            return f"running {elapsed_seconds // 3600}h {(elapsed_seconds % 3600) // 60}m"

    def to_api(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["status_with_elapsed"] = self.status_with_elapsed
        return data
