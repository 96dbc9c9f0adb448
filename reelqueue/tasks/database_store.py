import asyncio
import time

import orjson
from databases import Database

from reelqueue.core.logger import logger
from reelqueue.tasks.models import (
    TERMINAL_STATUSES,
    OverlapPolicy,
    ScheduledTask,
    TaskInstance,
    TaskPriority,
    TaskStatus,
    TaskTrigger,
)
from reelqueue.tasks.store import TaskStore, _as_set, apply_transition, clamp_percent, select_prunable

INSTANCE_COLUMNS = (
    "id",
    "type",
    "name",
    "priority",
    "status",
    "trigger_source",
    "progress_percent",
    "progress_message",
    "attempt",
    "max_attempts",
    "retry_chain_id",
    "schedule_id",
    "created_at",
    "started_at",
    "completed_at",
    "timeout",
    "deadline",
    "cancel_requested",
    "error",
    "params",
    "result",
)

SCHEDULE_COLUMNS = (
    "id",
    "name",
    "task_type",
    "params",
    "priority",
    "interval_seconds",
    "cron_expression",
    "enabled",
    "overlap_policy",
    "max_attempts",
    "timeout",
    "anchor_at",
    "next_run_at",
    "last_run_at",
    "last_instance_id",
    "created_at",
    "updated_at",
)

PRUNE_BATCH_SIZE = 500


def _upsert_query(table: str, columns) -> str:
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
    return f"""
        INSERT INTO {table} ({", ".join(columns)})
        VALUES ({", ".join(f":{c}" for c in columns)})
        ON CONFLICT (id) DO UPDATE SET {updates}
    """


class DatabaseTaskStore(TaskStore):
    """
    SQL task store on top of `databases` (sqlite or postgresql).

    Compare-and-set transitions run inside a transaction; on postgresql the
    row is locked with SELECT ... FOR UPDATE so that several processes
    sharing one database still cannot claim the same task.
    """

    def __init__(self, database: Database, database_type: str = "sqlite"):
        self.database = database
        self.database_type = database_type
        self._for_update = " FOR UPDATE" if database_type == "postgresql" else ""
        self._insertion_order = "seq" if database_type == "postgresql" else "rowid"
        self._lock = asyncio.Lock()
        self._instance_upsert = _upsert_query("task_instances", INSTANCE_COLUMNS)
        self._schedule_upsert = _upsert_query("scheduled_tasks", SCHEDULE_COLUMNS)

    # ---- row mapping ----

    @staticmethod
    def _instance_to_row(instance: TaskInstance) -> dict:
        return {
            "id": instance.id,
            "type": instance.type,
            "name": instance.name,
            "priority": instance.priority.value,
            "status": instance.status.value,
            "trigger_source": instance.trigger.value,
            "progress_percent": instance.progress_percent,
            "progress_message": instance.progress_message,
            "attempt": instance.attempt,
            "max_attempts": instance.max_attempts,
            "retry_chain_id": instance.retry_chain_id,
            "schedule_id": instance.schedule_id,
            "created_at": instance.created_at,
            "started_at": instance.started_at,
            "completed_at": instance.completed_at,
            "timeout": instance.timeout,
            "deadline": instance.deadline,
            "cancel_requested": int(instance.cancel_requested),
            "error": instance.error,
            "params": orjson.dumps(instance.params).decode(),
            "result": (
                orjson.dumps(instance.result).decode()
                if instance.result is not None
                else None
            ),
        }

    @staticmethod
    def _row_to_instance(row) -> TaskInstance:
        return TaskInstance(
            id=row["id"],
            type=row["type"],
            name=row["name"],
            priority=TaskPriority(row["priority"]),
            status=TaskStatus(row["status"]),
            trigger=TaskTrigger(row["trigger_source"]),
            progress_percent=int(row["progress_percent"] or 0),
            progress_message=row["progress_message"] or "",
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
            retry_chain_id=row["retry_chain_id"],
            schedule_id=row["schedule_id"],
            created_at=float(row["created_at"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            timeout=row["timeout"],
            deadline=row["deadline"],
            cancel_requested=bool(row["cancel_requested"]),
            error=row["error"],
            params=orjson.loads(row["params"]) if row["params"] else {},
            result=orjson.loads(row["result"]) if row["result"] else None,
        )

    @staticmethod
    def _schedule_to_row(schedule: ScheduledTask) -> dict:
        return {
            "id": schedule.id,
            "name": schedule.name,
            "task_type": schedule.task_type,
            "params": orjson.dumps(schedule.params).decode(),
            "priority": schedule.priority.value,
            "interval_seconds": schedule.interval,
            "cron_expression": schedule.cron_expression,
            "enabled": int(schedule.enabled),
            "overlap_policy": schedule.overlap_policy.value,
            "max_attempts": schedule.max_attempts,
            "timeout": schedule.timeout,
            "anchor_at": schedule.anchor_at,
            "next_run_at": schedule.next_run_at,
            "last_run_at": schedule.last_run_at,
            "last_instance_id": schedule.last_instance_id,
            "created_at": schedule.created_at,
            "updated_at": schedule.updated_at,
        }

    @staticmethod
    def _row_to_schedule(row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            name=row["name"],
            task_type=row["task_type"],
            params=orjson.loads(row["params"]) if row["params"] else {},
            priority=TaskPriority(row["priority"]),
            interval=row["interval_seconds"],
            cron_expression=row["cron_expression"],
            enabled=bool(row["enabled"]),
            overlap_policy=OverlapPolicy(row["overlap_policy"]),
            max_attempts=row["max_attempts"],
            timeout=row["timeout"],
            anchor_at=float(row["anchor_at"]),
            next_run_at=float(row["next_run_at"]),
            last_run_at=row["last_run_at"],
            last_instance_id=row["last_instance_id"],
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )

    # ---- task instances ----

    async def save_instance(self, instance):
        await self.database.execute(
            self._instance_upsert, self._instance_to_row(instance)
        )
        return instance

    async def load_instance(self, task_id):
        row = await self.database.fetch_one(
            "SELECT * FROM task_instances WHERE id = :id", {"id": task_id}
        )
        return self._row_to_instance(row) if row else None

    async def list_instances(
        self,
        status=None,
        priority=None,
        task_type=None,
        retry_chain_id=None,
        schedule_id=None,
        limit=None,
    ):
        clauses = []
        values = {}

        for column, wanted in (("status", status), ("priority", priority)):
            if wanted is None:
                continue
            names = []
            for i, item in enumerate(sorted(_as_set(wanted), key=lambda v: v.value)):
                key = f"{column}_{i}"
                names.append(f":{key}")
                values[key] = item.value
            clauses.append(f"{column} IN ({', '.join(names)})")

        for column, wanted in (
            ("type", task_type),
            ("retry_chain_id", retry_chain_id),
            ("schedule_id", schedule_id),
        ):
            if wanted is not None:
                clauses.append(f"{column} = :{column}")
                values[column] = wanted

        query = "SELECT * FROM task_instances"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY created_at, {self._insertion_order}"
        if limit:
            query += " LIMIT :limit"
            values["limit"] = int(limit)

        rows = await self.database.fetch_all(query, values)
        return [self._row_to_instance(row) for row in rows]

    async def transition(self, task_id, expected, target, **changes):
        async with self._lock:
            async with self.database.transaction():
                row = await self.database.fetch_one(
                    f"SELECT * FROM task_instances WHERE id = :id{self._for_update}",
                    {"id": task_id},
                )
                if row is None:
                    return None

                instance = self._row_to_instance(row)
                if instance.status not in _as_set(expected):
                    return None

                apply_transition(instance, target, changes)
                await self.database.execute(
                    self._instance_upsert, self._instance_to_row(instance)
                )
                return instance

    async def update_progress(self, task_id, percent, message=None):
        await self.database.execute(
            """
            UPDATE task_instances
            SET progress_percent = CASE
                    WHEN progress_percent > :percent THEN progress_percent
                    ELSE :percent
                END,
                progress_message = COALESCE(:message, progress_message)
            WHERE id = :id AND status = :running
            """,
            {
                "id": task_id,
                "percent": clamp_percent(percent),
                "message": message,
                "running": TaskStatus.RUNNING.value,
            },
        )

    async def request_cancel(self, task_id):
        await self.database.execute(
            "UPDATE task_instances SET cancel_requested = 1 WHERE id = :id AND status = :running",
            {"id": task_id, "running": TaskStatus.RUNNING.value},
        )

    # ---- scheduled tasks ----

    async def save_schedule(self, schedule):
        schedule.updated_at = time.time()
        await self.database.execute(
            self._schedule_upsert, self._schedule_to_row(schedule)
        )
        return schedule

    async def load_schedule(self, schedule_id):
        row = await self.database.fetch_one(
            "SELECT * FROM scheduled_tasks WHERE id = :id", {"id": schedule_id}
        )
        return self._row_to_schedule(row) if row else None

    async def list_schedules(self, enabled=None):
        if enabled is None:
            rows = await self.database.fetch_all(
                "SELECT * FROM scheduled_tasks ORDER BY name"
            )
        else:
            rows = await self.database.fetch_all(
                "SELECT * FROM scheduled_tasks WHERE enabled = :enabled ORDER BY name",
                {"enabled": int(enabled)},
            )
        return [self._row_to_schedule(row) for row in rows]

    async def delete_schedule(self, schedule_id):
        existing = await self.database.fetch_val(
            "SELECT 1 FROM scheduled_tasks WHERE id = :id", {"id": schedule_id}
        )
        if not existing:
            return False
        await self.database.execute(
            "DELETE FROM scheduled_tasks WHERE id = :id", {"id": schedule_id}
        )
        return True

    # ---- housekeeping ----

    async def prune(self, max_age=None, max_count=None, now=None):
        now = now if now is not None else time.time()
        terminal = await self.list_instances(status=TERMINAL_STATUSES)
        doomed = select_prunable(terminal, max_age, max_count, now)

        for start in range(0, len(doomed), PRUNE_BATCH_SIZE):
            batch = doomed[start : start + PRUNE_BATCH_SIZE]
            params = {f"id_{i}": task_id for i, task_id in enumerate(batch)}
            await self.database.execute(
                f"DELETE FROM task_instances WHERE id IN ({', '.join(f':{k}' for k in params)})",
                params,
            )

        if doomed:
            logger.log("DATABASE", f"Pruned {len(doomed)} finished tasks from history")
        return len(doomed)

    async def ping(self):
        await self.database.fetch_val("SELECT 1")
        return True

    async def close(self):
        if self.database.is_connected:
            await self.database.disconnect()
