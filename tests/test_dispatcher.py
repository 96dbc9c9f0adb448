import pytest

from fakes import EchoHandler, GatedHandler, wait_for_status, wait_until
from reelqueue.core.exceptions import (
    InvalidPriorityError,
    QueueFullError,
    TaskNotFoundError,
    TaskValidationError,
    UnknownTaskTypeError,
)
from reelqueue.tasks.models import TaskPriority, TaskStatus, TaskTrigger


@pytest.mark.asyncio
async def test_submit_creates_queued_first_attempt(make_scheduler, registry):
    registry.register("RefreshMovie", EchoHandler)
    scheduler = make_scheduler()

    instance = await scheduler.submit(
        "RefreshMovie", {"movie_id": 1}, priority="high", max_attempts=3, timeout=5
    )

    assert instance.status == TaskStatus.QUEUED
    assert instance.attempt == 1
    assert instance.max_attempts == 3
    assert instance.retry_chain_id == instance.id
    assert instance.priority == TaskPriority.HIGH
    assert instance.queue_name == "high-priority"
    assert (await scheduler.get(instance.id)).params == {"movie_id": 1}
    assert scheduler.queue_status()["high-priority"].queued_count == 1


@pytest.mark.asyncio
async def test_submit_validation(make_scheduler, registry):
    registry.register("RefreshMovie", EchoHandler)
    scheduler = make_scheduler()

    with pytest.raises(UnknownTaskTypeError):
        await scheduler.submit("Nope")
    with pytest.raises(InvalidPriorityError):
        await scheduler.submit("RefreshMovie", priority="urgent")
    with pytest.raises(TaskValidationError):
        await scheduler.submit("RefreshMovie", max_attempts=0)
    with pytest.raises(TaskValidationError):
        await scheduler.submit("RefreshMovie", timeout=0)

    assert await scheduler.list() == []


@pytest.mark.asyncio
async def test_submit_defaults_to_configured_max_attempts(make_scheduler, registry):
    registry.register("RefreshMovie", EchoHandler)
    scheduler = make_scheduler(DEFAULT_MAX_ATTEMPTS=4)

    instance = await scheduler.submit("RefreshMovie")

    assert instance.max_attempts == 4


@pytest.mark.asyncio
async def test_full_queue_rejects_immediately(make_scheduler, registry):
    registry.register("RefreshMovie", EchoHandler)
    scheduler = make_scheduler(BACKGROUND_QUEUE_CAPACITY=2)

    await scheduler.submit("RefreshMovie", priority="low")
    await scheduler.submit("RefreshMovie", priority="background")
    with pytest.raises(QueueFullError):
        await scheduler.submit("RefreshMovie", priority="background")

    # other tiers are unaffected
    await scheduler.submit("RefreshMovie", priority="default")
    assert len(await scheduler.list(priority="background")) == 2


@pytest.mark.asyncio
async def test_get_unknown_task(make_scheduler):
    scheduler = make_scheduler()

    with pytest.raises(TaskNotFoundError):
        await scheduler.get("does-not-exist")
    with pytest.raises(TaskNotFoundError):
        await scheduler.cancel("does-not-exist")


@pytest.mark.asyncio
async def test_cancel_queued_task_never_runs_handler(make_scheduler, registry):
    handler = EchoHandler()
    registry.register("RefreshMovie", lambda: handler)
    scheduler = make_scheduler()

    doomed = await scheduler.submit("RefreshMovie")
    kept = await scheduler.submit("RefreshMovie")

    cancelled = await scheduler.cancel(doomed.id)
    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.started_at is not None
    assert cancelled.started_at == cancelled.completed_at
    assert doomed.id not in scheduler.queues[TaskPriority.DEFAULT]

    await scheduler.start(run_trigger=False)
    await wait_for_status(scheduler, kept.id, TaskStatus.SUCCEEDED)

    assert handler.calls == [kept.id]
    assert (await scheduler.get(doomed.id)).status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_terminal_task_is_a_noop(make_scheduler, registry):
    registry.register("RefreshMovie", EchoHandler)
    scheduler = make_scheduler()
    await scheduler.start(run_trigger=False)

    instance = await scheduler.submit("RefreshMovie")
    done = await wait_for_status(scheduler, instance.id, TaskStatus.SUCCEEDED)

    again = await scheduler.cancel(instance.id)

    assert again == done


@pytest.mark.asyncio
async def test_list_in_submission_order_with_filters(make_scheduler, registry):
    registry.register("RefreshMovie", EchoHandler)
    registry.register("Search", EchoHandler)
    scheduler = make_scheduler()

    first = await scheduler.submit("RefreshMovie")
    second = await scheduler.submit("Search", priority="high")
    third = await scheduler.submit("RefreshMovie", priority="background")
    await scheduler.cancel(third.id)

    assert [i.id for i in await scheduler.list()] == [first.id, second.id, third.id]
    assert [i.id for i in await scheduler.list(task_type="Search")] == [second.id]
    assert [i.id for i in await scheduler.list(status="cancelled")] == [third.id]
    assert [i.id for i in await scheduler.list(status=["queued"], priority=["normal", "high"])] == [
        first.id,
        second.id,
    ]
    assert len(await scheduler.list(limit=1)) == 1


@pytest.mark.asyncio
async def test_queue_status_reports_every_tier(make_scheduler, registry):
    handler = GatedHandler()
    registry.register("Import", lambda: handler)
    scheduler = make_scheduler(HIGH_QUEUE_WORKERS=3, HIGH_QUEUE_CAPACITY=7)
    await scheduler.start(run_trigger=False)

    running = await scheduler.submit("Import", priority="high")
    await wait_until(lambda: handler.running == 1)

    status = scheduler.queue_status()
    assert set(status) == {"high-priority", "default", "background"}
    high = status["high-priority"]
    assert (high.worker_count, high.capacity, high.active_count) == (3, 7, 1)
    assert high.active_tasks == [running.id]

    handler.gate.set()
    await wait_for_status(scheduler, running.id)


@pytest.mark.asyncio
async def test_submit_records_trigger_and_name(make_scheduler, registry):
    registry.register("RefreshMovie", EchoHandler)
    scheduler = make_scheduler()

    instance = await scheduler.submit(
        "RefreshMovie", name="Refresh Dune", trigger=TaskTrigger.API
    )

    assert instance.name == "Refresh Dune"
    assert (await scheduler.get(instance.id)).trigger == TaskTrigger.API
