import pytest

from fakes import EchoHandler, wait_for_status
from reelqueue.tasks.models import TaskInstance, TaskPriority, TaskStatus
from reelqueue.tasks.store import MemoryTaskStore


@pytest.mark.asyncio
async def test_start_settles_rows_left_by_a_previous_run(make_scheduler, registry):
    handler = EchoHandler()
    registry.register("Search", lambda: handler)

    store = MemoryTaskStore()
    interrupted = TaskInstance(
        type="Search", status=TaskStatus.RUNNING, started_at=1.0, max_attempts=3
    )
    leftover = TaskInstance(type="Search", created_at=2.0)
    await store.save_instance(interrupted)
    await store.save_instance(leftover)

    scheduler = make_scheduler(store=store)
    await scheduler.start(run_trigger=False)

    failed = await scheduler.get(interrupted.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error == "Interrupted by shutdown"
    assert not scheduler.retry.has_pending(interrupted.retry_chain_id)

    done = await wait_for_status(scheduler, leftover.id)
    assert done.status == TaskStatus.SUCCEEDED
    assert handler.calls == [leftover.id]


@pytest.mark.asyncio
async def test_leftovers_beyond_capacity_are_dropped(make_scheduler, registry):
    registry.register("Search", EchoHandler)

    store = MemoryTaskStore()
    leftovers = [
        TaskInstance(type="Search", priority=TaskPriority.BACKGROUND, created_at=float(n))
        for n in range(3)
    ]
    for instance in leftovers:
        await store.save_instance(instance)

    scheduler = make_scheduler(store=store, BACKGROUND_QUEUE_CAPACITY=2)
    await scheduler.recover()

    assert scheduler.queues[TaskPriority.BACKGROUND].snapshot() == [
        leftovers[0].id,
        leftovers[1].id,
    ]
    dropped = await scheduler.get(leftovers[2].id)
    assert dropped.status == TaskStatus.CANCELLED
    assert "full" in dropped.error
