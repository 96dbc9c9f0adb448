import pytest
import pytest_asyncio

from fakes import make_settings
from reelqueue.tasks.registry import TaskHandlerRegistry
from reelqueue.tasks.scheduler import TaskScheduler
from reelqueue.tasks.store import MemoryTaskStore


@pytest.fixture
def registry():
    return TaskHandlerRegistry()


@pytest_asyncio.fixture
async def make_scheduler(registry):
    """Build schedulers on in-memory stores; everything started is stopped afterwards."""
    created = []

    def factory(store=None, clock=None, **overrides):
        kwargs = {"clock": clock} if clock is not None else {}
        scheduler = TaskScheduler(
            make_settings(**overrides), store or MemoryTaskStore(), registry, **kwargs
        )
        created.append(scheduler)
        return scheduler

    yield factory

    for scheduler in created:
        await scheduler.stop()
