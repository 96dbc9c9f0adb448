import time

from reelqueue.core.exceptions import RetryableError
from reelqueue.core.logger import logger
from reelqueue.tasks.registry import TaskHandler

SATURATION_ALERT = 0.9


class HealthCheckHandler(TaskHandler):
    """Checks that the task store answers and that no queue is close to capacity."""

    name = "HealthCheck"
    description = "Check task store reachability and queue saturation"
    timeout = 60.0

    def __init__(self, scheduler):
        self.scheduler = scheduler

    async def execute(self, ctx, params: dict):
        started = time.time()
        ctx.report_progress(10, "Checking task store")
        try:
            await self.scheduler.store.ping()
        except Exception as e:
            raise RetryableError(f"Task store unreachable: {e}")
        store_latency = time.time() - started

        ctx.raise_if_cancelled()
        ctx.report_progress(50, "Checking queues")

        alert = float(params.get("saturation_alert", SATURATION_ALERT))
        reasons = []
        queues = {}
        for name, state in self.scheduler.queue_status().items():
            saturation = state.queued_count / state.capacity if state.capacity else 0.0
            queues[name] = {
                "active": state.active_count,
                "workers": state.worker_count,
                "queued": state.queued_count,
                "capacity": state.capacity,
                "saturation": round(saturation, 3),
            }
            if saturation >= alert:
                reasons.append(f"{name}_queue_saturated")

        status = "degraded" if reasons else "healthy"
        ctx.report_progress(100, f"System {status}")
        if reasons:
            logger.warning(f"Health check degraded: {', '.join(reasons)}")

        return {
            "status": status,
            "reasons": reasons,
            "store_latency_ms": round(store_latency * 1000, 2),
            "pending_retries": self.scheduler.retry.pending_count,
            "queues": queues,
        }
