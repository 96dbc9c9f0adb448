import time

import pytest

from fakes import GatedHandler, wait_for_status, wait_until
from reelqueue.handlers.housekeeping import register_builtin_handlers
from reelqueue.tasks.models import TaskInstance, TaskStatus


@pytest.mark.asyncio
async def test_health_check_reports_healthy(make_scheduler):
    scheduler = make_scheduler()
    register_builtin_handlers(scheduler)
    await scheduler.start(run_trigger=False)

    instance = await scheduler.submit("HealthCheck", priority="background")
    done = await wait_for_status(scheduler, instance.id)

    assert done.status == TaskStatus.SUCCEEDED
    assert done.progress_percent == 100
    assert done.result["status"] == "healthy"
    assert done.result["reasons"] == []
    assert set(done.result["queues"]) == {"high-priority", "default", "background"}
    assert done.result["queues"]["background"]["active"] == 1


@pytest.mark.asyncio
async def test_health_check_flags_saturated_queues(make_scheduler, registry):
    gated = GatedHandler()
    registry.register("Import", lambda: gated)
    scheduler = make_scheduler(DEFAULT_QUEUE_WORKERS=1, DEFAULT_QUEUE_CAPACITY=4)
    register_builtin_handlers(scheduler)
    await scheduler.start(run_trigger=False)

    for _ in range(4):
        await scheduler.submit("Import")
    await wait_until(lambda: gated.running == 1)
    await scheduler.submit("Import")

    instance = await scheduler.submit(
        "HealthCheck", {"saturation_alert": 0.75}, priority="high"
    )
    done = await wait_for_status(scheduler, instance.id)

    assert done.status == TaskStatus.SUCCEEDED
    assert done.result["status"] == "degraded"
    assert done.result["reasons"] == ["default_queue_saturated"]
    assert done.result["queues"]["default"]["queued"] == 4

    gated.gate.set()


@pytest.mark.asyncio
async def test_cleanup_prunes_old_history(make_scheduler):
    scheduler = make_scheduler(HISTORY_MAX_AGE=3600, HISTORY_MAX_COUNT=1000)
    register_builtin_handlers(scheduler)

    now = time.time()
    old = TaskInstance(
        type="Search",
        status=TaskStatus.SUCCEEDED,
        started_at=now - 7300,
        completed_at=now - 7200,
    )
    fresh = TaskInstance(
        type="Search",
        status=TaskStatus.FAILED,
        started_at=now - 70,
        completed_at=now - 60,
    )
    for instance in (old, fresh):
        await scheduler.store.save_instance(instance)

    await scheduler.start(run_trigger=False)
    cleanup = await scheduler.submit("Cleanup", priority="background")
    done = await wait_for_status(scheduler, cleanup.id)

    assert done.status == TaskStatus.SUCCEEDED
    assert done.result == {"removed": 1, "max_age": 3600, "max_count": 1000}
    remaining = {i.id for i in await scheduler.list()}
    assert remaining == {fresh.id, cleanup.id}


@pytest.mark.asyncio
async def test_cleanup_rejects_bad_params(make_scheduler):
    scheduler = make_scheduler()
    register_builtin_handlers(scheduler)
    await scheduler.start(run_trigger=False)

    instance = await scheduler.submit("Cleanup", {"max_age": -1}, max_attempts=3)
    done = await wait_for_status(scheduler, instance.id)

    assert done.status == TaskStatus.FAILED
    assert "max_age" in done.error
    assert not scheduler.retry.has_pending(instance.retry_chain_id)
