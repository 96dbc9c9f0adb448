"""
TaskStore contract tests, run against the in-memory store and the sqlite
store (a real database file under pytest's tmp_path).
"""

import pytest
import pytest_asyncio

from fakes import make_settings
from reelqueue.tasks.models import (
    OverlapPolicy,
    ScheduledTask,
    TaskInstance,
    TaskPriority,
    TaskStatus,
    TaskTrigger,
)
from reelqueue.tasks.scheduler import open_store


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    settings = make_settings(
        DATABASE_TYPE=request.param,
        DATABASE_PATH=str(tmp_path / "reelqueue.db"),
    )
    store = await open_store(settings)
    yield store
    await store.close()


def _instance(**fields):
    fields.setdefault("type", "RefreshMovie")
    return TaskInstance(**fields)


@pytest.mark.asyncio
async def test_instance_round_trip(store):
    instance = _instance(
        name="Refresh Dune",
        priority=TaskPriority.HIGH,
        trigger=TaskTrigger.API,
        max_attempts=3,
        timeout=30.0,
        params={"movie_id": 438631, "tags": ["scifi"]},
    )
    await store.save_instance(instance)

    loaded = await store.load_instance(instance.id)

    assert loaded == instance
    assert await store.load_instance("missing") is None


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(store):
    instance = await store.save_instance(_instance())

    claimed = await store.transition(
        instance.id, {TaskStatus.QUEUED}, TaskStatus.RUNNING, started_at=10.0, deadline=20.0
    )
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.started_at == 10.0
    assert claimed.deadline == 20.0

    # second claim loses
    assert await store.transition(instance.id, {TaskStatus.QUEUED}, TaskStatus.RUNNING) is None
    assert await store.transition("missing", {TaskStatus.QUEUED}, TaskStatus.RUNNING) is None

    done = await store.transition(
        instance.id, {TaskStatus.RUNNING}, TaskStatus.SUCCEEDED, result={"files": 2}
    )
    assert done.status == TaskStatus.SUCCEEDED
    assert done.progress_percent == 100
    assert done.completed_at is not None
    assert (await store.load_instance(instance.id)).result == {"files": 2}


@pytest.mark.asyncio
async def test_progress_only_moves_forward(store):
    instance = await store.save_instance(_instance())
    await store.update_progress(instance.id, 30, "ignored while queued")
    assert (await store.load_instance(instance.id)).progress_percent == 0

    await store.transition(instance.id, {TaskStatus.QUEUED}, TaskStatus.RUNNING)
    await store.update_progress(instance.id, 60, "scanning")
    await store.update_progress(instance.id, 40)
    await store.update_progress(instance.id, 250, "almost")

    loaded = await store.load_instance(instance.id)
    assert loaded.progress_percent == 100
    assert loaded.progress_message == "almost"


@pytest.mark.asyncio
async def test_request_cancel_flags_running_tasks_only(store):
    queued = await store.save_instance(_instance())
    running = await store.save_instance(_instance())
    await store.transition(running.id, {TaskStatus.QUEUED}, TaskStatus.RUNNING)

    await store.request_cancel(queued.id)
    await store.request_cancel(running.id)

    assert not (await store.load_instance(queued.id)).cancel_requested
    assert (await store.load_instance(running.id)).cancel_requested


@pytest.mark.asyncio
async def test_list_filters_and_order(store):
    first = await store.save_instance(_instance(created_at=1.0))
    second = await store.save_instance(
        _instance(type="Search", priority=TaskPriority.HIGH, created_at=2.0)
    )
    third = await store.save_instance(_instance(created_at=3.0))
    await store.transition(third.id, {TaskStatus.QUEUED}, TaskStatus.RUNNING)

    assert [i.id for i in await store.list_instances()] == [first.id, second.id, third.id]
    assert [i.id for i in await store.list_instances(status=TaskStatus.QUEUED)] == [
        first.id,
        second.id,
    ]
    assert [i.id for i in await store.list_instances(priority=TaskPriority.HIGH)] == [second.id]
    assert [i.id for i in await store.list_instances(task_type="RefreshMovie")] == [
        first.id,
        third.id,
    ]
    assert len(await store.list_instances(limit=2)) == 2


@pytest.mark.asyncio
async def test_latest_in_chain(store):
    first = await store.save_instance(_instance(max_attempts=3))
    second = await store.save_instance(
        _instance(attempt=2, max_attempts=3, retry_chain_id=first.id)
    )

    latest = await store.latest_in_chain(first.id)

    assert latest.id == second.id


@pytest.mark.asyncio
async def test_prune_only_removes_terminal_rows(store):
    old = await store.save_instance(_instance(created_at=1.0))
    await store.transition(old.id, {TaskStatus.QUEUED}, TaskStatus.CANCELLED)
    await store.save_instance(
        (await store.load_instance(old.id)).model_copy(update={"completed_at": 100.0})
    )
    recent = await store.save_instance(_instance(created_at=2.0))
    await store.transition(recent.id, {TaskStatus.QUEUED}, TaskStatus.CANCELLED)
    waiting = await store.save_instance(_instance(created_at=0.5))

    now = (await store.load_instance(recent.id)).completed_at + 10
    removed = await store.prune(max_age=3600, now=now)

    assert removed == 1
    assert await store.load_instance(old.id) is None
    assert await store.load_instance(recent.id) is not None
    assert await store.load_instance(waiting.id) is not None


@pytest.mark.asyncio
async def test_prune_by_count_keeps_newest(store):
    ids = []
    for n in range(5):
        instance = await store.save_instance(_instance(created_at=float(n)))
        await store.transition(instance.id, {TaskStatus.QUEUED}, TaskStatus.RUNNING)
        await store.transition(
            instance.id, {TaskStatus.RUNNING}, TaskStatus.FAILED, completed_at=float(100 + n)
        )
        ids.append(instance.id)

    removed = await store.prune(max_count=2, now=200.0)

    assert removed == 3
    remaining = {i.id for i in await store.list_instances()}
    assert remaining == set(ids[-2:])


@pytest.mark.asyncio
async def test_schedule_crud(store):
    schedule = ScheduledTask(
        name="Refresh Library",
        task_type="RefreshAllMovies",
        params={"deep": True},
        priority=TaskPriority.BACKGROUND,
        interval=604800.0,
        overlap_policy=OverlapPolicy.ALLOW,
        max_attempts=2,
        next_run_at=5000.0,
    )
    await store.save_schedule(schedule)

    loaded = await store.load_schedule(schedule.id)
    assert loaded == schedule

    loaded.enabled = False
    await store.save_schedule(loaded)
    assert await store.list_schedules(enabled=True) == []
    assert [s.id for s in await store.list_schedules(enabled=False)] == [schedule.id]

    assert await store.delete_schedule(schedule.id)
    assert not await store.delete_schedule(schedule.id)
    assert await store.load_schedule(schedule.id) is None


@pytest.mark.asyncio
async def test_ping(store):
    assert await store.ping()


@pytest.mark.asyncio
async def test_equal_timestamps_list_in_submission_order(store):
    ids = ["f" * 32, "0" * 32, "8" * 32]
    for task_id in ids:
        await store.save_instance(_instance(id=task_id, created_at=100.0))

    listed = await store.list_instances(status=TaskStatus.QUEUED)

    assert [i.id for i in listed] == ids
