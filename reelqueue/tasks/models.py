"""
Task Models

Plain data structures shared by the dispatcher, the worker pools, the
schedule trigger and the task stores. Everything returned to callers is one
of these models (copies, never live objects).
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from reelqueue.core.exceptions import InvalidPriorityError


class TaskPriority(str, Enum):
    """Priority tiers. Each one has its own queue and worker pool."""

    HIGH = "high"
    DEFAULT = "default"
    BACKGROUND = "background"

    @property
    def queue_name(self) -> str:
        return QUEUE_NAMES[self]


QUEUE_NAMES = {
    TaskPriority.HIGH: "high-priority",
    TaskPriority.DEFAULT: "default",
    TaskPriority.BACKGROUND: "background",
}

PRIORITY_ALIASES = {
    "normal": TaskPriority.DEFAULT,
    "low": TaskPriority.BACKGROUND,
    "high-priority": TaskPriority.HIGH,
}


def parse_priority(value) -> TaskPriority:
    if isinstance(value, TaskPriority):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        if key in PRIORITY_ALIASES:
            return PRIORITY_ALIASES[key]
        try:
            return TaskPriority(key)
        except ValueError:
            pass
    raise InvalidPriorityError(value)


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.SUCCEEDED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.TIMED_OUT,
    }
)

# Legal status transitions. Terminal states have no outgoing edges.
TRANSITIONS = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: TERMINAL_STATUSES,
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.TIMED_OUT: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS[current]


class TaskTrigger(str, Enum):
    """What caused a task instance to be created."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    SYSTEM = "system"
    API = "api"
    RETRY = "retry"


class OverlapPolicy(str, Enum):
    SKIP = "skip"  # do not fire while the previous instance is still active
    ALLOW = "allow"


def new_id() -> str:
    return uuid.uuid4().hex


class TaskInstance(BaseModel):
    """One concrete, schedulable unit of work (one attempt of a retry chain)."""

    id: str = Field(default_factory=new_id)
    type: str
    name: str = ""
    priority: TaskPriority = TaskPriority.DEFAULT
    status: TaskStatus = TaskStatus.QUEUED
    trigger: TaskTrigger = TaskTrigger.MANUAL

    progress_percent: int = 0
    progress_message: str = ""

    attempt: int = 1
    max_attempts: int = 1
    retry_chain_id: str = ""
    schedule_id: Optional[str] = None

    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    timeout: Optional[float] = None
    deadline: Optional[float] = None
    cancel_requested: bool = False

    error: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None

    def model_post_init(self, __context):
        if not self.retry_chain_id:
            self.retry_chain_id = self.id
        if not self.name:
            self.name = self.type

    @computed_field
    @property
    def queue_name(self) -> str:
        return self.priority.queue_name

    @computed_field
    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return max(0.0, self.completed_at - self.started_at)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ScheduledTask(BaseModel):
    """A recurring trigger definition that periodically creates TaskInstances."""

    id: str = Field(default_factory=new_id)
    name: str
    task_type: str
    params: Dict[str, Any] = Field(default_factory=dict)
    priority: TaskPriority = TaskPriority.DEFAULT
    interval: Optional[float] = None  # seconds
    cron_expression: Optional[str] = None
    enabled: bool = True
    overlap_policy: OverlapPolicy = OverlapPolicy.SKIP
    max_attempts: Optional[int] = None
    timeout: Optional[float] = None

    anchor_at: float = Field(default_factory=time.time)
    next_run_at: float = 0.0
    last_run_at: Optional[float] = None
    last_instance_id: Optional[str] = None

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class QueueState(BaseModel):
    """Derived, per-queue status snapshot. Not persisted."""

    name: str
    priority: TaskPriority
    worker_count: int
    active_count: int
    queued_count: int
    capacity: int
    active_tasks: List[str] = Field(default_factory=list)
