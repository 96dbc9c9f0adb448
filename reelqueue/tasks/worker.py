import asyncio
import inspect
import time
import traceback
from typing import Dict, Set

import orjson

from reelqueue.core.exceptions import NonRetryableError, TaskCancelledError
from reelqueue.core.logger import logger
from reelqueue.tasks.context import TaskContext
from reelqueue.tasks.models import QueueState, TaskPriority, TaskStatus
from reelqueue.tasks.queue import TaskQueue
from reelqueue.tasks.registry import TaskHandlerRegistry
from reelqueue.tasks.retry import RetryCoordinator
from reelqueue.tasks.store import TaskStore

RUNNING = {TaskStatus.RUNNING}


def _jsonable(value):
    try:
        orjson.dumps(value)
        return value
    except TypeError:
        return repr(value)


def _describe_error(error: BaseException) -> str:
    message = str(error)
    return f"{error.__class__.__name__}: {message}" if message else error.__class__.__name__


class WorkerPool:
    """
    Fixed-size set of workers serving one priority queue.

    A worker claims the next queued task, runs its handler and records the
    outcome. The deadline is enforced here regardless of handler
    cooperation: past it, the worker marks the task timed out and moves on,
    abandoning the handler call (its cancellation signal is set and a late
    result is only logged).
    """

    def __init__(
        self,
        priority: TaskPriority,
        queue: TaskQueue,
        store: TaskStore,
        registry: TaskHandlerRegistry,
        retry: RetryCoordinator,
        worker_count: int,
        default_timeout: float,
        cancel_grace: float,
    ):
        self.priority = priority
        self.name = priority.queue_name
        self.queue = queue
        self.store = store
        self.registry = registry
        self.retry = retry
        self.worker_count = worker_count
        self.default_timeout = default_timeout
        self.cancel_grace = cancel_grace

        self.active: Dict[str, TaskContext] = {}
        self._workers: Set[asyncio.Task] = set()
        self._orphans: Set[asyncio.Task] = set()
        self._claimed: Set[str] = set()
        self._early_cancels: Dict[str, str] = {}

    def start(self):
        if self._workers:
            return
        for index in range(self.worker_count):
            self._workers.add(
                asyncio.create_task(self._work(index), name=f"{self.name}-worker-{index}")
            )
        logger.log(
            "WORKER", f"Started {self.worker_count} workers for queue {self.name}"
        )

    async def stop(self):
        for ctx in list(self.active.values()):
            ctx.token.cancel("Scheduler stopped")

        workers = list(self._workers)
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()

        orphans = list(self._orphans)
        for orphan in orphans:
            orphan.cancel()
        self._orphans.clear()
        logger.log("WORKER", f"Stopped workers for queue {self.name}")

    def signal_cancel(self, task_id: str, reason: str = "Cancelled by user"):
        ctx = self.active.get(task_id)
        if ctx is not None:
            ctx.token.cancel(reason)
        elif task_id in self._claimed:
            # claimed but not yet handed to its handler
            self._early_cancels[task_id] = reason

    def state(self) -> QueueState:
        return QueueState(
            name=self.name,
            priority=self.priority,
            worker_count=self.worker_count,
            active_count=len(self.active),
            queued_count=len(self.queue),
            capacity=self.queue.capacity,
            active_tasks=list(self.active),
        )

    async def _work(self, index: int):
        while True:
            task_id = await self.queue.get()
            try:
                await self.process(task_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {self.name}-{index} failed on task {task_id}: {e}")
                logger.exception(traceback.format_exc())

    async def process(self, task_id: str):
        instance = await self.store.load_instance(task_id)
        if instance is None or instance.status != TaskStatus.QUEUED:
            return

        handler = None
        handler_error = None
        try:
            handler = self.registry.create(instance.type)
        except Exception as e:
            handler_error = e

        timeout = (
            instance.timeout
            or getattr(handler, "timeout", None)
            or self.default_timeout
        )
        started_at = time.time()
        # marked before the claim lands so a cancel racing it is not lost
        self._claimed.add(task_id)
        try:
            claimed = await self.store.transition(
                task_id,
                {TaskStatus.QUEUED},
                TaskStatus.RUNNING,
                started_at=started_at,
                timeout=timeout,
                deadline=started_at + timeout,
            )
            if claimed is None:
                # cancelled (or claimed elsewhere) while it sat in the queue
                return

            if handler is None:
                failed = await self.store.transition(
                    task_id,
                    RUNNING,
                    TaskStatus.FAILED,
                    error=f"No handler available for {instance.type}: {handler_error}",
                )
                logger.error(f"Task {task_id} failed: no handler for {instance.type}")
                if failed:
                    self.retry.handle_failure(failed, NonRetryableError(str(handler_error)))
                return

            logger.log(
                "WORKER",
                f"Task {claimed.name} ({task_id}) started on {self.name} - attempt {claimed.attempt}/{claimed.max_attempts}, timeout {timeout}s",
            )

            ctx = TaskContext(claimed, self.store, asyncio.get_running_loop())
            self.active[task_id] = ctx
            if task_id in self._early_cancels:
                ctx.token.cancel(self._early_cancels[task_id])
            await self._execute(handler, ctx, claimed)
        finally:
            self.active.pop(task_id, None)
            self._claimed.discard(task_id)
            self._early_cancels.pop(task_id, None)

    async def _invoke(self, handler, ctx: TaskContext, params: dict):
        if inspect.iscoroutinefunction(handler.execute):
            return await handler.execute(ctx, params)

        result = await asyncio.to_thread(handler.execute, ctx, params)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _execute(self, handler, ctx: TaskContext, instance):
        handler_task = asyncio.ensure_future(
            self._invoke(handler, ctx, dict(instance.params))
        )
        cancel_waiter = asyncio.ensure_future(ctx.token.wait())
        reclaim_at = None

        try:
            while True:
                limit = ctx.deadline
                if reclaim_at is not None:
                    limit = min(limit, reclaim_at)
                waiting = {handler_task}
                if not cancel_waiter.done():
                    waiting.add(cancel_waiter)

                done, _ = await asyncio.wait(
                    waiting,
                    timeout=max(0.0, limit - time.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if handler_task in done:
                    await self._finish(ctx, instance, handler_task)
                    return

                if cancel_waiter in done and reclaim_at is None:
                    reclaim_at = time.time() + self.cancel_grace
                    logger.log(
                        "WORKER",
                        f"Cancellation signalled to task {instance.id}, waiting up to {self.cancel_grace}s",
                    )
                    continue

                now = time.time()
                if now >= ctx.deadline:
                    self._abandon(handler_task, ctx, "Deadline exceeded")
                    await self._record(
                        instance,
                        TaskStatus.TIMED_OUT,
                        ctx,
                        error=f"Timed out after {instance.timeout}s",
                    )
                    logger.warning(
                        f"Task {instance.name} ({instance.id}) timed out after {instance.timeout}s"
                    )
                    return

                if reclaim_at is not None and now >= reclaim_at:
                    self._abandon(handler_task, ctx, ctx.token.reason)
                    await self._record(
                        instance,
                        TaskStatus.CANCELLED,
                        ctx,
                        error=f"{ctx.token.reason} (handler did not stop within {self.cancel_grace}s)",
                    )
                    return
        except asyncio.CancelledError:
            handler_task.cancel()
            await self._record(instance, TaskStatus.CANCELLED, ctx, error="Scheduler stopped")
            raise
        finally:
            cancel_waiter.cancel()

    async def _finish(self, ctx: TaskContext, instance, handler_task: asyncio.Future):
        if handler_task.cancelled():
            error = TaskCancelledError(ctx.token.reason or "Task was cancelled")
        else:
            error = handler_task.exception()

        if error is None:
            await self._record(
                instance,
                TaskStatus.SUCCEEDED,
                ctx,
                result=_jsonable(handler_task.result()),
            )
            logger.log("WORKER", f"Task {instance.name} ({instance.id}) succeeded")
            return

        if isinstance(error, TaskCancelledError) or ctx.cancelled:
            await self._record(
                instance,
                TaskStatus.CANCELLED,
                ctx,
                error=ctx.token.reason or _describe_error(error),
            )
            logger.log("WORKER", f"Task {instance.name} ({instance.id}) cancelled")
            return

        logger.warning(
            f"Task {instance.name} ({instance.id}) failed on attempt {instance.attempt}/{instance.max_attempts}: {_describe_error(error)}"
        )
        failed = await self._record(
            instance, TaskStatus.FAILED, ctx, error=_describe_error(error)
        )
        if failed is not None:
            self.retry.handle_failure(failed, error)

    async def _record(self, instance, status: TaskStatus, ctx: TaskContext, **changes):
        try:
            recorded = await self.store.transition(
                instance.id,
                RUNNING,
                status,
                progress_percent=ctx.progress_percent,
                progress_message=ctx.progress_message,
                **changes,
            )
        except Exception as e:
            logger.error(f"Failed to record {status.value} for task {instance.id}: {e}")
            return None

        if recorded is None:
            logger.warning(
                f"Task {instance.id} was no longer running when recording {status.value}"
            )
        return recorded

    def _abandon(self, handler_task: asyncio.Future, ctx: TaskContext, reason: str):
        ctx.token.cancel(reason)
        self._orphans.add(handler_task)
        handler_task.add_done_callback(self._orphan_finished)

    def _orphan_finished(self, task: asyncio.Future):
        self._orphans.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.log("WORKER", f"Abandoned handler on {self.name} ended with {_describe_error(error)}")
        else:
            logger.log("WORKER", f"Abandoned handler on {self.name} completed late; result discarded")
