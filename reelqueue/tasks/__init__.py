"""
Tasks - Background Task Scheduling & Execution

Priority queues with dedicated worker pools, retries with exponential
backoff, deadlines, cooperative cancellation and recurring schedules for
the media-library automation jobs (metadata refresh, searches, imports,
health checks, cleanup).
"""

from reelqueue.tasks.context import CancellationToken, TaskContext
from reelqueue.tasks.models import (
    QueueState,
    ScheduledTask,
    TaskInstance,
    TaskPriority,
    TaskStatus,
    TaskTrigger,
)
from reelqueue.tasks.registry import TaskHandler, TaskHandlerRegistry
from reelqueue.tasks.scheduler import TaskScheduler, open_store

__all__ = [
    "TaskScheduler",
    "TaskHandler",
    "TaskHandlerRegistry",
    "TaskContext",
    "CancellationToken",
    "TaskInstance",
    "ScheduledTask",
    "QueueState",
    "TaskPriority",
    "TaskStatus",
    "TaskTrigger",
    "open_store",
]
