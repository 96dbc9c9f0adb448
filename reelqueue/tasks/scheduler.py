import time
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from reelqueue.core.database import build_database, setup_database
from reelqueue.core.exceptions import (
    QueueFullError,
    ScheduleNotFoundError,
    ScheduleValidationError,
    SchedulerError,
)
from reelqueue.core.logger import logger
from reelqueue.core.models import AppSettings, settings as default_settings
from reelqueue.tasks.database_store import DatabaseTaskStore
from reelqueue.tasks.dispatcher import Dispatcher
from reelqueue.tasks.models import (
    OverlapPolicy,
    QueueState,
    ScheduledTask,
    TaskInstance,
    TaskPriority,
    TaskStatus,
    parse_priority,
)
from reelqueue.tasks.queue import TaskQueue
from reelqueue.tasks.registry import HandlerFactory, TaskHandlerRegistry
from reelqueue.tasks.retry import RetryCoordinator, RetryPolicy
from reelqueue.tasks.store import MemoryTaskStore, TaskStore
from reelqueue.tasks.trigger import ScheduleTrigger, compute_next_run, parse_cron
from reelqueue.tasks.worker import WorkerPool

SCHEDULE_FIELDS = (
    "name",
    "task_type",
    "params",
    "priority",
    "interval",
    "cron_expression",
    "enabled",
    "overlap_policy",
    "max_attempts",
    "timeout",
    "first_run_at",
)


async def open_store(settings: AppSettings) -> TaskStore:
    """Build the task store selected by ``DATABASE_TYPE``, creating the schema if needed."""
    if settings.DATABASE_TYPE == "memory":
        return MemoryTaskStore()

    database = build_database(settings)
    await setup_database(database, settings)
    return DatabaseTaskStore(database, settings.DATABASE_TYPE)


class TaskScheduler:
    """
    The background task engine: three priority queues with their worker
    pools, the dispatcher, retry coordination and the schedule trigger,
    started and stopped together.
    """

    def __init__(
        self,
        settings: AppSettings = None,
        store: TaskStore = None,
        registry: TaskHandlerRegistry = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or default_settings
        self.store = store or MemoryTaskStore()
        self.registry = registry or TaskHandlerRegistry()
        self.clock = clock

        self.queues: Dict[TaskPriority, TaskQueue] = {
            priority: TaskQueue(
                priority.queue_name, self.settings.queue_capacity(priority)
            )
            for priority in TaskPriority
        }
        self.dispatcher = Dispatcher(
            self.store,
            self.registry,
            self.queues,
            default_max_attempts=self.settings.DEFAULT_MAX_ATTEMPTS,
        )
        self.retry = RetryCoordinator(
            self.dispatcher, RetryPolicy.from_settings(self.settings)
        )
        self.pools: Dict[TaskPriority, WorkerPool] = {
            priority: WorkerPool(
                priority,
                self.queues[priority],
                self.store,
                self.registry,
                self.retry,
                worker_count=self.settings.queue_workers(priority),
                default_timeout=self.settings.TASK_TIMEOUT,
                cancel_grace=self.settings.CANCEL_GRACE_PERIOD,
            )
            for priority in TaskPriority
        }
        self.dispatcher.pools = self.pools
        self.trigger = ScheduleTrigger(
            self.store,
            self.dispatcher,
            self.retry,
            tick_interval=self.settings.SCHEDULER_TICK_INTERVAL,
            clock=clock,
        )
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def register_handler(
        self, type_name: str, factory: HandlerFactory, description: str = None
    ):
        self.registry.register(type_name, factory, description)

    async def start(self, run_trigger: bool = True):
        if self._running:
            return

        await self.recover()
        self.retry.start()
        for pool in self.pools.values():
            pool.start()

        if self.settings.ENABLE_DEFAULT_SCHEDULES:
            await self.ensure_default_schedules()
        if run_trigger:
            self.trigger.start()

        self._running = True
        logger.log("SCHEDULER", "Task scheduler started")

    async def stop(self):
        if not self._running:
            return
        self._running = False

        await self.trigger.stop()
        await self.retry.stop()
        for pool in self.pools.values():
            await pool.stop()
        logger.log("SCHEDULER", "Task scheduler stopped")

    async def recover(self):
        """Settle rows left behind by a previous run of the engine."""
        interrupted = await self.store.list_instances(status=TaskStatus.RUNNING)
        for instance in interrupted:
            await self.store.transition(
                instance.id,
                {TaskStatus.RUNNING},
                TaskStatus.FAILED,
                error="Interrupted by shutdown",
            )

        requeued = 0
        dropped = 0
        for instance in await self.store.list_instances(status=TaskStatus.QUEUED):
            queue = self.queues[instance.priority]
            if instance.id in queue:
                continue
            try:
                queue.put_nowait(instance.id)
                requeued += 1
            except QueueFullError as e:
                await self.store.transition(
                    instance.id,
                    {TaskStatus.QUEUED},
                    TaskStatus.CANCELLED,
                    error=f"Dropped on startup: {e.message}",
                )
                dropped += 1

        if interrupted or requeued or dropped:
            logger.log(
                "SCHEDULER",
                f"Recovery: {len(interrupted)} interrupted tasks failed, {requeued} re-queued, {dropped} dropped",
            )

    # ---- tasks ----

    async def submit(
        self,
        task_type: str,
        params: dict = None,
        priority="default",
        max_attempts: int = None,
        **kwargs,
    ) -> TaskInstance:
        return await self.dispatcher.submit(
            task_type, params, priority, max_attempts, **kwargs
        )

    async def get(self, task_id: str) -> TaskInstance:
        return await self.dispatcher.get(task_id)

    async def list(self, status=None, priority=None, task_type: str = None, limit: int = None):
        return await self.dispatcher.list(status, priority, task_type, limit)

    async def cancel(self, task_id: str) -> TaskInstance:
        return await self.dispatcher.cancel(task_id)

    def queue_status(self) -> Dict[str, QueueState]:
        return self.dispatcher.queue_status()

    # ---- schedules ----

    async def create_schedule(
        self,
        name: str,
        task_type: str,
        *,
        interval: float = None,
        cron_expression: str = None,
        params: dict = None,
        priority="default",
        overlap_policy="skip",
        enabled: bool = True,
        max_attempts: int = None,
        timeout: float = None,
        first_run_at: float = None,
    ) -> ScheduledTask:
        fields = {
            "name": name,
            "task_type": task_type,
            "interval": interval,
            "cron_expression": cron_expression,
            "params": params or {},
            "priority": priority,
            "overlap_policy": overlap_policy,
            "enabled": enabled,
            "max_attempts": max_attempts,
            "timeout": timeout,
        }
        schedule = self._build_schedule(fields)
        await self._ensure_unique_name(schedule)

        now = self.clock()
        self._reset_timing(schedule, now, first_run_at)
        schedule.created_at = now
        await self.store.save_schedule(schedule)
        logger.log(
            "SCHEDULER",
            f"Scheduled task created: {schedule.name} ({schedule.task_type}, {self._describe_timing(schedule)})",
        )
        return schedule

    async def update_schedule(self, schedule_id: str, **changes) -> ScheduledTask:
        unknown = set(changes) - set(SCHEDULE_FIELDS)
        if unknown:
            raise ScheduleValidationError(
                f"Unknown schedule fields: {', '.join(sorted(unknown))}"
            )

        current = await self.get_schedule(schedule_id)
        first_run_at = changes.pop("first_run_at", None)

        fields = current.model_dump(
            include={
                "name",
                "task_type",
                "params",
                "priority",
                "interval",
                "cron_expression",
                "enabled",
                "overlap_policy",
                "max_attempts",
                "timeout",
            }
        )
        fields.update(changes)
        schedule = self._build_schedule(fields)
        schedule.id = current.id
        schedule.created_at = current.created_at
        schedule.anchor_at = current.anchor_at
        schedule.next_run_at = current.next_run_at
        schedule.last_run_at = current.last_run_at
        schedule.last_instance_id = current.last_instance_id

        if schedule.name != current.name:
            await self._ensure_unique_name(schedule)

        timing_changed = (
            first_run_at is not None
            or schedule.interval != current.interval
            or schedule.cron_expression != current.cron_expression
            or (schedule.enabled and not current.enabled)
        )
        if timing_changed:
            self._reset_timing(schedule, self.clock(), first_run_at)

        await self.store.save_schedule(schedule)
        logger.log("SCHEDULER", f"Scheduled task updated: {schedule.name}")
        return schedule

    async def delete_schedule(self, schedule_id: str):
        if not await self.store.delete_schedule(schedule_id):
            raise ScheduleNotFoundError(schedule_id)
        logger.log("SCHEDULER", f"Scheduled task deleted: {schedule_id}")

    async def get_schedule(self, schedule_id: str) -> ScheduledTask:
        schedule = await self.store.load_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    async def list_schedules(self, enabled: bool = None) -> List[ScheduledTask]:
        return await self.store.list_schedules(enabled=enabled)

    async def ensure_default_schedules(self) -> List[ScheduledTask]:
        defaults = (
            ("Health Check", "HealthCheck", self.settings.HEALTH_CHECK_INTERVAL),
            ("Cleanup Tasks", "Cleanup", self.settings.CLEANUP_INTERVAL),
        )
        existing = {s.name for s in await self.store.list_schedules()}

        created = []
        for name, task_type, interval in defaults:
            if name in existing:
                continue
            if not self.registry.is_registered(task_type):
                logger.warning(
                    f"Default schedule {name} skipped: no handler registered for {task_type}"
                )
                continue
            created.append(
                await self.create_schedule(
                    name,
                    task_type,
                    interval=interval,
                    priority=TaskPriority.BACKGROUND,
                    max_attempts=1,
                )
            )
        return created

    def _build_schedule(self, fields: dict) -> ScheduledTask:
        name = (fields.get("name") or "").strip()
        if not name:
            raise ScheduleValidationError("Schedule name is required")
        fields["name"] = name

        task_type = fields.get("task_type")
        if not task_type or not self.registry.is_registered(task_type):
            raise ScheduleValidationError(
                f"Unknown task type for schedule {name}: {task_type}"
            )

        interval = fields.get("interval")
        cron_expression = fields.get("cron_expression") or None
        fields["cron_expression"] = cron_expression
        if (interval is None) == (cron_expression is None):
            raise ScheduleValidationError(
                f"Schedule {name} needs exactly one of interval or cron_expression"
            )
        if interval is not None and interval <= 0:
            raise ScheduleValidationError(f"Schedule {name} interval must be positive")
        if cron_expression is not None:
            try:
                parse_cron(cron_expression)
            except ValueError as e:
                raise ScheduleValidationError(
                    f"Invalid cron expression for schedule {name}: {e}"
                )

        try:
            fields["priority"] = parse_priority(fields.get("priority"))
        except SchedulerError as e:
            raise ScheduleValidationError(e.message)
        try:
            fields["overlap_policy"] = OverlapPolicy(fields.get("overlap_policy"))
        except ValueError:
            raise ScheduleValidationError(
                f"Invalid overlap policy: {fields.get('overlap_policy')!r}"
            )

        max_attempts = fields.get("max_attempts")
        if max_attempts is not None and max_attempts < 1:
            raise ScheduleValidationError("max_attempts must be at least 1")
        timeout = fields.get("timeout")
        if timeout is not None and timeout <= 0:
            raise ScheduleValidationError("timeout must be positive")

        try:
            return ScheduledTask(**fields)
        except ValidationError as e:
            raise ScheduleValidationError(f"Invalid schedule {name}: {e}")

    async def _ensure_unique_name(self, schedule: ScheduledTask):
        for other in await self.store.list_schedules():
            if other.name == schedule.name and other.id != schedule.id:
                raise ScheduleValidationError(
                    f"A schedule named {schedule.name} already exists"
                )

    def _reset_timing(
        self, schedule: ScheduledTask, now: float, first_run_at: Optional[float]
    ):
        if first_run_at is not None:
            schedule.anchor_at = first_run_at
            schedule.next_run_at = first_run_at
            return

        schedule.anchor_at = now
        next_run = compute_next_run(schedule, now)
        if next_run is None:
            raise ScheduleValidationError(
                f"Schedule {schedule.name} never fires: {schedule.cron_expression}"
            )
        schedule.next_run_at = next_run

    @staticmethod
    def _describe_timing(schedule: ScheduledTask) -> str:
        if schedule.cron_expression:
            return f"cron '{schedule.cron_expression}'"
        return f"every {schedule.interval}s"

