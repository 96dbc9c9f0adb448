from typing import Dict, List

from reelqueue.core.exceptions import TaskNotFoundError, TaskValidationError, UnknownTaskTypeError
from reelqueue.core.logger import logger
from reelqueue.tasks.models import (
    QueueState,
    TaskInstance,
    TaskPriority,
    TaskStatus,
    TaskTrigger,
    parse_priority,
)
from reelqueue.tasks.queue import TaskQueue
from reelqueue.tasks.registry import TaskHandlerRegistry
from reelqueue.tasks.store import TaskStore


class Dispatcher:
    """Validates and enqueues submissions; answers status queries and cancellations."""

    def __init__(
        self,
        store: TaskStore,
        registry: TaskHandlerRegistry,
        queues: Dict[TaskPriority, TaskQueue],
        default_max_attempts: int = 3,
    ):
        self.store = store
        self.registry = registry
        self.queues = queues
        self.default_max_attempts = default_max_attempts
        self.pools = {}  # TaskPriority -> WorkerPool, attached by the scheduler

    async def submit(
        self,
        task_type: str,
        params: dict = None,
        priority="default",
        max_attempts: int = None,
        *,
        name: str = None,
        timeout: float = None,
        trigger: TaskTrigger = TaskTrigger.MANUAL,
        schedule_id: str = None,
    ) -> TaskInstance:
        if not self.registry.is_registered(task_type):
            raise UnknownTaskTypeError(task_type)

        priority = parse_priority(priority)

        if max_attempts is None:
            max_attempts = self.default_max_attempts
        if not isinstance(max_attempts, int) or max_attempts < 1:
            raise TaskValidationError(f"max_attempts must be at least 1, got {max_attempts!r}")
        if timeout is not None and timeout <= 0:
            raise TaskValidationError(f"timeout must be positive, got {timeout!r}")
        if params is not None and not isinstance(params, dict):
            raise TaskValidationError("params must be a mapping")

        instance = TaskInstance(
            type=task_type,
            name=name or task_type,
            priority=priority,
            trigger=TaskTrigger(trigger),
            max_attempts=max_attempts,
            schedule_id=schedule_id,
            timeout=timeout,
            params=dict(params or {}),
        )
        await self._enqueue(instance)
        logger.log(
            "SCHEDULER",
            f"Queued task {instance.name} ({instance.id}) on {instance.queue_name} [{instance.trigger.value}]",
        )
        return instance

    async def submit_attempt(self, instance: TaskInstance) -> TaskInstance:
        """Enqueue an already-built instance, e.g. the next attempt of a retry chain."""
        await self._enqueue(instance)
        logger.log(
            "RETRY",
            f"Queued attempt {instance.attempt}/{instance.max_attempts} of {instance.name} ({instance.id}) on {instance.queue_name}",
        )
        return instance

    async def _enqueue(self, instance: TaskInstance):
        queue = self.queues[instance.priority]
        # QueueFullError surfaces here, before anything is persisted
        queue.reserve()
        try:
            await self.store.save_instance(instance)
        except BaseException:
            queue.release()
            raise
        queue.put_reserved(instance.id)

    async def get(self, task_id: str) -> TaskInstance:
        instance = await self.store.load_instance(task_id)
        if instance is None:
            raise TaskNotFoundError(task_id)
        return instance

    async def list(
        self,
        status=None,
        priority=None,
        task_type: str = None,
        limit: int = None,
    ) -> List[TaskInstance]:
        if priority is not None:
            if isinstance(priority, (set, frozenset, list, tuple)):
                priority = {parse_priority(p) for p in priority}
            else:
                priority = parse_priority(priority)
        if status is not None:
            if isinstance(status, (set, frozenset, list, tuple)):
                status = {TaskStatus(s) for s in status}
            else:
                status = TaskStatus(status)
        return await self.store.list_instances(
            status=status, priority=priority, task_type=task_type, limit=limit
        )

    async def cancel(self, task_id: str) -> TaskInstance:
        """
        Cancel a task.

        Terminal tasks are returned unchanged. Queued tasks are cancelled on
        the spot and never reach a handler. Running tasks get their
        cancellation signal set and are returned with ``cancel_requested``;
        they finish as cancelled once the handler stops or the grace period
        runs out.
        """
        instance = await self.get(task_id)

        if instance.status == TaskStatus.QUEUED:
            cancelled = await self.store.transition(
                task_id,
                {TaskStatus.QUEUED},
                TaskStatus.CANCELLED,
                error="Cancelled before start",
            )
            if cancelled is not None:
                self.queues[cancelled.priority].discard(task_id)
                logger.log(
                    "SCHEDULER",
                    f"Cancelled queued task {cancelled.name} ({task_id})",
                )
                return cancelled
            # claimed by a worker in the meantime
            instance = await self.get(task_id)

        if instance.status == TaskStatus.RUNNING:
            await self.store.request_cancel(task_id)
            pool = self.pools.get(instance.priority)
            if pool is None:
                logger.warning(
                    f"Task {task_id} is running but its queue has no workers; cancellation flag recorded only"
                )
            else:
                pool.signal_cancel(task_id)
                logger.log(
                    "SCHEDULER",
                    f"Cancellation requested for running task {instance.name} ({task_id})",
                )
            return await self.get(task_id)

        return instance

    def queue_status(self) -> Dict[str, QueueState]:
        states = {}
        for priority, queue in self.queues.items():
            pool = self.pools.get(priority)
            if pool is not None:
                state = pool.state()
            else:
                state = QueueState(
                    name=queue.name,
                    priority=priority,
                    worker_count=0,
                    active_count=0,
                    queued_count=len(queue),
                    capacity=queue.capacity,
                )
            states[queue.name] = state
        return states
