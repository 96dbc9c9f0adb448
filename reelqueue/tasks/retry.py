import asyncio
import random
import time
import traceback
from dataclasses import dataclass
from typing import Dict, Optional

from reelqueue.core.exceptions import QueueFullError, SchedulerError
from reelqueue.core.logger import logger
from reelqueue.tasks.models import TaskInstance, TaskStatus, TaskTrigger


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 5.0
    backoff_factor: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.1  # +/- fraction of the computed delay

    @classmethod
    def from_settings(cls, settings):
        return cls(
            base_delay=settings.RETRY_BASE_DELAY,
            backoff_factor=settings.RETRY_BACKOFF_FACTOR,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def base_delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``, without jitter."""
        delay = self.base_delay * self.backoff_factor ** max(0, attempt - 1)
        return min(self.max_delay, delay)

    def delay_for(self, attempt: int, rng: random.Random = None) -> float:
        delay = self.base_delay_for(attempt)
        if self.jitter > 0 and delay > 0:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return min(self.max_delay, max(0.0, delay))


def should_retry(instance: TaskInstance, error: BaseException) -> bool:
    if instance.status != TaskStatus.FAILED:
        return False
    if not getattr(error, "retryable", True):
        return False
    return instance.attempt < instance.max_attempts


def build_successor(instance: TaskInstance) -> TaskInstance:
    return TaskInstance(
        type=instance.type,
        name=instance.name,
        priority=instance.priority,
        trigger=TaskTrigger.RETRY,
        attempt=instance.attempt + 1,
        max_attempts=instance.max_attempts,
        retry_chain_id=instance.retry_chain_id,
        schedule_id=instance.schedule_id,
        timeout=instance.timeout,
        params=dict(instance.params),
    )


class RetryCoordinator:
    """
    Turns failed attempts into delayed successor attempts.

    Each pending retry is an asyncio task that sleeps through the backoff and
    then submits the next attempt to the back of its queue.
    """

    def __init__(self, dispatcher, policy: RetryPolicy, rng: random.Random = None):
        self.dispatcher = dispatcher
        self.policy = policy
        self.rng = rng or random.Random()
        self._pending: Dict[str, asyncio.Task] = {}
        self._running = True

    def has_pending(self, retry_chain_id: str) -> bool:
        task = self._pending.get(retry_chain_id)
        return task is not None and not task.done()

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._pending.values() if not task.done())

    def handle_failure(
        self, instance: TaskInstance, error: BaseException
    ) -> Optional[float]:
        """Schedule the next attempt if the policy allows it. Returns the delay used."""
        if not should_retry(instance, error):
            if instance.attempt >= instance.max_attempts:
                logger.log(
                    "RETRY",
                    f"Task {instance.id} ({instance.type}) failed permanently after {instance.attempt}/{instance.max_attempts} attempts",
                )
            else:
                logger.log(
                    "RETRY",
                    f"Task {instance.id} ({instance.type}) failed with a non-retryable error: {instance.error}",
                )
            return None

        if not self._running:
            logger.log(
                "RETRY",
                f"Retry of task {instance.id} dropped, scheduler is stopping",
            )
            return None

        delay = self.policy.delay_for(instance.attempt, self.rng)
        successor = build_successor(instance)
        self._pending[instance.retry_chain_id] = asyncio.create_task(
            self._submit_later(successor, delay, instance.completed_at or time.time())
        )
        logger.log(
            "RETRY",
            f"Task {instance.type} attempt {successor.attempt}/{successor.max_attempts} scheduled in {delay:.2f}s (chain {instance.retry_chain_id})",
        )
        return delay

    async def _submit_later(self, successor: TaskInstance, delay: float, failed_at: float):
        chain_id = successor.retry_chain_id
        try:
            await asyncio.sleep(max(0.0, failed_at + delay - time.time()))
            while self._running:
                try:
                    successor.created_at = time.time()
                    await self.dispatcher.submit_attempt(successor)
                    return
                except QueueFullError as e:
                    logger.log(
                        "RETRY",
                        f"{e.message}; retrying attempt {successor.attempt} of chain {chain_id} in {self.policy.max_delay}s",
                    )
                    await asyncio.sleep(self.policy.max_delay)
                except SchedulerError:
                    raise
                except Exception as e:
                    logger.error(
                        f"Could not submit attempt {successor.attempt} of chain {chain_id}: {e}; retrying in {self.policy.max_delay}s"
                    )
                    logger.exception(traceback.format_exc())
                    await asyncio.sleep(self.policy.max_delay)
        except asyncio.CancelledError:
            pass
        except SchedulerError as e:
            logger.error(f"Could not submit retry for chain {chain_id}: {e.message}")
        finally:
            if self._pending.get(chain_id) is asyncio.current_task():
                del self._pending[chain_id]

    def start(self):
        self._running = True

    async def stop(self):
        self._running = False
        tasks = [task for task in self._pending.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
