import asyncio
from collections import deque

from reelqueue.core.exceptions import QueueFullError


class TaskQueue:
    """
    Bounded FIFO of task ids for one priority tier.

    Capacity is reserved synchronously (``reserve``) before a submission
    awaits persistence, so concurrent submits can never overfill the queue.
    Queued ids can be withdrawn (``discard``) when a task is cancelled.
    """

    def __init__(self, name: str, capacity: int):
        self.name = name
        self.capacity = capacity
        self._items = deque()
        self._getters = deque()
        self._reserved = 0

    def __len__(self):
        return len(self._items)

    def __contains__(self, task_id):
        return task_id in self._items

    def snapshot(self):
        return list(self._items)

    def full(self) -> bool:
        return len(self._items) + self._reserved >= self.capacity

    def reserve(self):
        if self.full():
            raise QueueFullError(self.name, self.capacity)
        self._reserved += 1

    def release(self):
        self._reserved = max(0, self._reserved - 1)

    def put_reserved(self, task_id: str):
        self.release()
        self._append(task_id)

    def put_nowait(self, task_id: str):
        self.reserve()
        self.put_reserved(task_id)

    def discard(self, task_id: str) -> bool:
        try:
            self._items.remove(task_id)
            return True
        except ValueError:
            return False

    async def get(self) -> str:
        while not self._items:
            getter = asyncio.get_running_loop().create_future()
            self._getters.append(getter)
            try:
                await getter
            except BaseException:
                getter.cancel()
                try:
                    self._getters.remove(getter)
                except ValueError:
                    pass
                if self._items and not getter.cancelled():
                    self._wakeup_next()
                raise
        return self._items.popleft()

    def _append(self, task_id: str):
        self._items.append(task_id)
        self._wakeup_next()

    def _wakeup_next(self):
        while self._getters:
            getter = self._getters.popleft()
            if not getter.done():
                getter.set_result(None)
                break
