import argparse
import asyncio
import signal
import traceback
from datetime import datetime

from reelqueue.core.logger import log_startup_info, logger, setup_logger
from reelqueue.core.models import settings
from reelqueue.handlers.housekeeping import register_builtin_handlers
from reelqueue.tasks.models import TaskStatus
from reelqueue.tasks.scheduler import TaskScheduler, open_store


def _format_time(timestamp):
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


async def run_command(store):
    scheduler = TaskScheduler(settings, store)
    register_builtin_handlers(scheduler)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    log_startup_info(settings)
    await scheduler.start()
    try:
        await stop_event.wait()
    finally:
        logger.log("REELQUEUE", "Shutting down")
        await scheduler.stop()


async def tasks_command(store, status=None, limit=50):
    instances = await store.list_instances(
        status=TaskStatus(status) if status else None
    )
    instances = instances[-limit:] if limit else instances

    print(f"\n{'ID':<34} {'TYPE':<20} {'QUEUE':<14} {'STATUS':<10} {'TRY':>5} {'%':>4}  CREATED")
    print("-" * 110)
    for instance in instances:
        print(
            f"{instance.id:<34} {instance.type[:20]:<20} {instance.queue_name:<14} {instance.status.value:<10} "
            f"{instance.attempt}/{instance.max_attempts:<3} {instance.progress_percent:>4}  {_format_time(instance.created_at)}"
        )
    print("-" * 110)
    print(f"{len(instances)} tasks")


async def schedules_command(store):
    schedules = await store.list_schedules()

    print(f"\n{'NAME':<24} {'TYPE':<20} {'EVERY':<16} {'ENABLED':<8} {'LAST RUN':<20} NEXT RUN")
    print("-" * 110)
    for schedule in schedules:
        every = schedule.cron_expression or f"{schedule.interval:g}s"
        print(
            f"{schedule.name[:24]:<24} {schedule.task_type[:20]:<20} {every:<16} {str(schedule.enabled):<8} "
            f"{_format_time(schedule.last_run_at):<20} {_format_time(schedule.next_run_at)}"
        )
    print("-" * 110)


async def prune_command(store, max_age, max_count):
    removed = await store.prune(max_age=max_age, max_count=max_count)
    print(f"Removed {removed} finished tasks")


async def main(argv=None):
    parser = argparse.ArgumentParser(
        description="ReelQueue Background Task Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the engine until interrupted
  python -m reelqueue run

  # Show the 20 most recent failed tasks
  python -m reelqueue tasks --status failed --limit 20

  # Show recurring schedules
  python -m reelqueue schedules

  # Prune finished tasks older than one day
  python -m reelqueue prune --max-age 86400
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the task engine (default)")

    tasks_parser = subparsers.add_parser("tasks", help="List task instances")
    tasks_parser.add_argument(
        "--status",
        choices=["queued", "running", "succeeded", "failed", "cancelled", "timed_out"],
        help="Only show tasks with this status",
    )
    tasks_parser.add_argument("--limit", type=int, default=50, help="Most recent N tasks")

    subparsers.add_parser("schedules", help="List recurring schedules")

    prune_parser = subparsers.add_parser("prune", help="Delete finished task history")
    prune_parser.add_argument(
        "--max-age", type=float, default=settings.HISTORY_MAX_AGE, help="Seconds to keep"
    )
    prune_parser.add_argument(
        "--max-count", type=int, default=settings.HISTORY_MAX_COUNT, help="Tasks to keep"
    )

    args = parser.parse_args(argv)
    command = args.command or "run"

    setup_logger(settings.LOG_LEVEL)

    store = None
    try:
        store = await open_store(settings)

        if command == "run":
            await run_command(store)
        elif command == "tasks":
            await tasks_command(store, args.status, args.limit)
        elif command == "schedules":
            await schedules_command(store)
        elif command == "prune":
            await prune_command(store, args.max_age, args.max_count)

    except KeyboardInterrupt:
        logger.log("REELQUEUE", "Stopped by user")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        logger.exception(traceback.format_exc())
        raise
    finally:
        if store is not None:
            await store.close()
