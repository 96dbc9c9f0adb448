import asyncio
import time
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from reelqueue.core.exceptions import InvalidTransitionError
from reelqueue.tasks.models import (
    ScheduledTask,
    TaskInstance,
    TaskStatus,
    can_transition,
)


def clamp_percent(percent) -> int:
    return min(100, max(0, int(percent)))


def apply_transition(
    instance: TaskInstance, target: TaskStatus, changes: dict, now: float = None
):
    """Move ``instance`` to ``target`` in place, filling in lifecycle timestamps."""
    if not can_transition(instance.status, target):
        raise InvalidTransitionError(instance.id, instance.status, target)

    now = now if now is not None else time.time()
    for key, value in changes.items():
        setattr(instance, key, value)

    instance.status = target
    if instance.started_at is None:
        instance.started_at = now
    if target.is_terminal and instance.completed_at is None:
        instance.completed_at = now
    if target == TaskStatus.SUCCEEDED:
        instance.progress_percent = 100
    return instance


def matches(
    instance: TaskInstance,
    status=None,
    priority=None,
    task_type=None,
    retry_chain_id=None,
    schedule_id=None,
) -> bool:
    if status is not None and instance.status not in _as_set(status):
        return False
    if priority is not None and instance.priority not in _as_set(priority):
        return False
    if task_type is not None and instance.type != task_type:
        return False
    if retry_chain_id is not None and instance.retry_chain_id != retry_chain_id:
        return False
    if schedule_id is not None and instance.schedule_id != schedule_id:
        return False
    return True


def _as_set(value):
    if isinstance(value, (set, frozenset, list, tuple)):
        return set(value)
    return {value}


def select_prunable(
    instances: Iterable[TaskInstance],
    max_age: Optional[float],
    max_count: Optional[int],
    now: float,
) -> List[str]:
    """Ids of terminal instances that fall outside the retention window."""
    terminal = sorted(
        (i for i in instances if i.is_terminal),
        key=lambda i: (i.completed_at or 0.0, i.created_at),
    )
    doomed = []
    if max_age is not None and max_age >= 0:
        cutoff = now - max_age
        doomed = [i.id for i in terminal if (i.completed_at or 0.0) < cutoff]
        terminal = [i for i in terminal if (i.completed_at or 0.0) >= cutoff]
    if max_count is not None and max_count >= 0 and len(terminal) > max_count:
        overflow = len(terminal) - max_count
        doomed.extend(i.id for i in terminal[:overflow])
    return doomed


class TaskStore(ABC):
    """
    Durable record of task instances, scheduled tasks and their history.

    Every status change goes through ``transition``, a compare-and-set on
    the expected current status, so two workers can never claim the same
    queued instance.
    """

    @abstractmethod
    async def save_instance(self, instance: TaskInstance) -> TaskInstance:
        pass

    @abstractmethod
    async def load_instance(self, task_id: str) -> Optional[TaskInstance]:
        pass

    @abstractmethod
    async def list_instances(
        self,
        status=None,
        priority=None,
        task_type: str = None,
        retry_chain_id: str = None,
        schedule_id: str = None,
        limit: int = None,
    ) -> List[TaskInstance]:
        """Matching instances in submission order."""

    @abstractmethod
    async def transition(
        self, task_id: str, expected, target: TaskStatus, **changes
    ) -> Optional[TaskInstance]:
        """
        Atomically move a task to ``target`` if its status is in ``expected``.

        Returns the updated instance, or None when the task does not exist
        or is no longer in an expected status.
        """

    @abstractmethod
    async def update_progress(
        self, task_id: str, percent: int, message: str = None
    ) -> None:
        pass

    @abstractmethod
    async def request_cancel(self, task_id: str) -> None:
        """Flag a running task as signalled for cancellation."""

    @abstractmethod
    async def save_schedule(self, schedule: ScheduledTask) -> ScheduledTask:
        pass

    @abstractmethod
    async def load_schedule(self, schedule_id: str) -> Optional[ScheduledTask]:
        pass

    @abstractmethod
    async def list_schedules(self, enabled: bool = None) -> List[ScheduledTask]:
        pass

    @abstractmethod
    async def delete_schedule(self, schedule_id: str) -> bool:
        pass

    @abstractmethod
    async def prune(
        self, max_age: float = None, max_count: int = None, now: float = None
    ) -> int:
        """Delete terminal instances older than ``max_age`` or beyond ``max_count``."""

    async def latest_in_chain(self, retry_chain_id: str) -> Optional[TaskInstance]:
        attempts = await self.list_instances(retry_chain_id=retry_chain_id)
        if not attempts:
            return None
        return max(attempts, key=lambda i: i.attempt)

    async def ping(self) -> bool:
        return True

    async def close(self):
        return


class MemoryTaskStore(TaskStore):
    """In-process store. Hands out copies so callers never share live state."""

    def __init__(self):
        self._instances = {}
        self._schedules = {}
        self._lock = asyncio.Lock()

    async def save_instance(self, instance):
        async with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def load_instance(self, task_id):
        instance = self._instances.get(task_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self,
        status=None,
        priority=None,
        task_type=None,
        retry_chain_id=None,
        schedule_id=None,
        limit=None,
    ):
        result = [
            i.model_copy(deep=True)
            for i in sorted(self._instances.values(), key=lambda i: i.created_at)
            if matches(i, status, priority, task_type, retry_chain_id, schedule_id)
        ]
        return result[:limit] if limit else result

    async def transition(self, task_id, expected, target, **changes):
        async with self._lock:
            instance = self._instances.get(task_id)
            if instance is None or instance.status not in _as_set(expected):
                return None
            updated = apply_transition(instance.model_copy(deep=True), target, changes)
            self._instances[task_id] = updated
            return updated.model_copy(deep=True)

    async def update_progress(self, task_id, percent, message=None):
        instance = self._instances.get(task_id)
        if instance is None or instance.status != TaskStatus.RUNNING:
            return
        instance.progress_percent = max(instance.progress_percent, clamp_percent(percent))
        if message is not None:
            instance.progress_message = message

    async def request_cancel(self, task_id):
        instance = self._instances.get(task_id)
        if instance is not None and instance.status == TaskStatus.RUNNING:
            instance.cancel_requested = True

    async def save_schedule(self, schedule):
        schedule.updated_at = time.time()
        self._schedules[schedule.id] = schedule.model_copy(deep=True)
        return schedule

    async def load_schedule(self, schedule_id):
        schedule = self._schedules.get(schedule_id)
        return schedule.model_copy(deep=True) if schedule else None

    async def list_schedules(self, enabled=None):
        return [
            s.model_copy(deep=True)
            for s in sorted(self._schedules.values(), key=lambda s: s.name)
            if enabled is None or s.enabled == enabled
        ]

    async def delete_schedule(self, schedule_id):
        return self._schedules.pop(schedule_id, None) is not None

    async def prune(self, max_age=None, max_count=None, now=None):
        now = now if now is not None else time.time()
        async with self._lock:
            doomed = select_prunable(self._instances.values(), max_age, max_count, now)
            for task_id in doomed:
                del self._instances[task_id]
        return len(doomed)
