import asyncio
import math
import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from apscheduler.triggers.cron import CronTrigger

from reelqueue.core.exceptions import SchedulerError
from reelqueue.core.logger import logger
from reelqueue.tasks.models import OverlapPolicy, ScheduledTask, TaskInstance, TaskTrigger


def parse_cron(expression: str) -> CronTrigger:
    """Parse a standard 5-field crontab expression (evaluated in UTC)."""
    return CronTrigger.from_crontab(expression, timezone="UTC")


def next_cron_run(expression: str, now: float) -> Optional[float]:
    start = datetime.fromtimestamp(now, tz=timezone.utc) + timedelta(microseconds=1)
    fire_time = parse_cron(expression).get_next_fire_time(None, start)
    return fire_time.timestamp() if fire_time else None


def next_interval_run(anchor: float, interval: float, now: float) -> float:
    """Smallest ``anchor + k * interval`` strictly after ``now``."""
    if now < anchor:
        return anchor
    k = math.floor((now - anchor) / interval) + 1
    candidate = anchor + k * interval
    if candidate <= now:
        candidate += interval
    return candidate


def compute_next_run(schedule: ScheduledTask, now: float) -> Optional[float]:
    if schedule.cron_expression:
        return next_cron_run(schedule.cron_expression, now)
    return next_interval_run(schedule.anchor_at, schedule.interval, now)


class ScheduleTrigger:
    """
    Polling loop that turns due ScheduledTasks into task instances.

    Never runs handler code itself; every firing goes through the dispatcher.
    Next run times come from the schedule anchor (or its cron expression), so
    a late tick does not push later firings back.
    """

    def __init__(
        self,
        store,
        dispatcher,
        retry,
        tick_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.retry = retry
        self.tick_interval = tick_interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="schedule-trigger")
        logger.log("TRIGGER", f"Schedule trigger started (tick every {self.tick_interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.log("TRIGGER", "Schedule trigger stopped")

    async def _run(self):
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Schedule trigger tick failed: {e}")
                logger.exception(traceback.format_exc())
            await asyncio.sleep(self.tick_interval)

    async def tick(self, now: float = None) -> List[TaskInstance]:
        """Fire every enabled schedule that is due at ``now``. Returns the submitted instances."""
        now = now if now is not None else self.clock()
        fired = []
        async with self._tick_lock:
            for schedule in await self.store.list_schedules(enabled=True):
                if schedule.next_run_at > now:
                    continue
                try:
                    instance = await self._fire(schedule, now)
                except Exception as e:
                    logger.error(f"Failed to evaluate schedule {schedule.name}: {e}")
                    continue
                if instance is not None:
                    fired.append(instance)
        return fired

    async def _fire(self, schedule: ScheduledTask, now: float) -> Optional[TaskInstance]:
        instance = None
        if schedule.overlap_policy == OverlapPolicy.SKIP and await self._still_active(schedule):
            logger.log(
                "TRIGGER",
                f"Skipping {schedule.name}: previous run {schedule.last_instance_id} has not finished",
            )
        else:
            try:
                instance = await self.dispatcher.submit(
                    schedule.task_type,
                    params=dict(schedule.params),
                    priority=schedule.priority,
                    max_attempts=schedule.max_attempts,
                    name=schedule.name,
                    timeout=schedule.timeout,
                    trigger=TaskTrigger.SCHEDULED,
                    schedule_id=schedule.id,
                )
                schedule.last_run_at = now
                schedule.last_instance_id = instance.id
            except SchedulerError as e:
                logger.warning(f"Scheduled run of {schedule.name} rejected: {e.message}")

        next_run = compute_next_run(schedule, now)
        if next_run is None:
            # cron expression with no future fire time
            schedule.enabled = False
            logger.log("TRIGGER", f"Schedule {schedule.name} has no future runs, disabling it")
        else:
            schedule.next_run_at = next_run

        await self.store.save_schedule(schedule)
        if instance is not None:
            logger.log(
                "TRIGGER",
                f"Fired {schedule.name} -> task {instance.id}, next run at {datetime.fromtimestamp(schedule.next_run_at, tz=timezone.utc).isoformat()}",
            )
        return instance

    async def _still_active(self, schedule: ScheduledTask) -> bool:
        if not schedule.last_instance_id:
            return False
        last = await self.store.load_instance(schedule.last_instance_id)
        if last is None:
            return False
        if self.retry.has_pending(last.retry_chain_id):
            return True
        latest = await self.store.latest_in_chain(last.retry_chain_id)
        return latest is not None and not latest.is_terminal
