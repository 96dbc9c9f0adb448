from reelqueue.core.exceptions import NonRetryableError
from reelqueue.core.logger import logger
from reelqueue.handlers.health import HealthCheckHandler
from reelqueue.tasks.registry import TaskHandler


class CleanupHandler(TaskHandler):
    """
    Prunes finished task history.

    Terminal instances older than ``max_age`` seconds are deleted, then the
    oldest ones beyond ``max_count``. Both default to the HISTORY_* settings
    and can be overridden through the task params.
    """

    name = "Cleanup"
    description = "Remove old completed tasks from history"

    def __init__(self, scheduler):
        self.scheduler = scheduler

    async def execute(self, ctx, params: dict):
        settings = self.scheduler.settings
        max_age = params.get("max_age", settings.HISTORY_MAX_AGE)
        max_count = params.get("max_count", settings.HISTORY_MAX_COUNT)
        if max_age is not None and max_age < 0:
            raise NonRetryableError(f"max_age must not be negative, got {max_age}")
        if max_count is not None and max_count < 0:
            raise NonRetryableError(f"max_count must not be negative, got {max_count}")

        ctx.report_progress(5, "Pruning task history")
        removed = await self.scheduler.store.prune(
            max_age=max_age, max_count=max_count, now=self.scheduler.clock()
        )
        ctx.report_progress(100, f"Removed {removed} tasks")
        logger.log("SCHEDULER", f"Cleanup removed {removed} finished tasks")
        return {"removed": removed, "max_age": max_age, "max_count": max_count}


def register_builtin_handlers(scheduler):
    """Register the HealthCheck and Cleanup handlers bound to ``scheduler``."""
    for handler_class in (HealthCheckHandler, CleanupHandler):
        scheduler.register_handler(
            handler_class.name,
            lambda cls=handler_class: cls(scheduler),
            handler_class.description,
        )
