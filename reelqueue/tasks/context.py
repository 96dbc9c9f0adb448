import asyncio
import threading
import time
from typing import Optional

from reelqueue.core.exceptions import TaskCancelledError
from reelqueue.core.logger import logger
from reelqueue.tasks.store import clamp_percent


class CancellationToken:
    """
    Cooperative cancellation signal shared between a worker and its handler.

    Safe to read from handler threads; ``cancel`` must run on the event loop.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._flag = threading.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self, reason: str = "Task was cancelled"):
        if self._flag.is_set():
            return
        self.reason = reason
        self._flag.set()
        self._event.set()

    async def wait(self):
        await self._event.wait()


class TaskContext:
    """
    Everything a handler gets from its worker: the task identity, the
    cancellation signal, the deadline and a progress reporter.
    """

    def __init__(
        self,
        instance,
        store,
        loop: asyncio.AbstractEventLoop,
        token: CancellationToken = None,
    ):
        self.task_id = instance.id
        self.task_type = instance.type
        self.attempt = instance.attempt
        self.max_attempts = instance.max_attempts
        self.deadline = instance.deadline
        self.token = token or CancellationToken()
        self.progress_percent = instance.progress_percent
        self.progress_message = instance.progress_message
        self._store = store
        self._loop = loop
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.time())

    def raise_if_cancelled(self):
        if self.token.cancelled:
            raise TaskCancelledError(self.token.reason or "Task was cancelled")

    async def wait_cancelled(self, timeout: float = None) -> bool:
        """Sleep until cancelled or ``timeout`` elapses. Returns True if cancelled."""
        try:
            await asyncio.wait_for(self.token.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.token.cancelled

    def report_progress(self, percent, message: str = None):
        """
        Record progress. Clamped to [0, 100] and never lower than a previous
        report; callable from coroutines and handler threads alike.
        """
        with self._lock:
            self.progress_percent = max(self.progress_percent, clamp_percent(percent))
            if message is not None:
                self.progress_message = message
            percent = self.progress_percent

        if self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._schedule_write(percent, message)
        else:
            self._loop.call_soon_threadsafe(self._schedule_write, percent, message)

    def _schedule_write(self, percent: int, message: Optional[str]):
        task = self._loop.create_task(
            self._store.update_progress(self.task_id, percent, message)
        )
        task.add_done_callback(self._progress_written)

    def _progress_written(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error:
            logger.warning(f"Failed to record progress for task {self.task_id}: {error}")
