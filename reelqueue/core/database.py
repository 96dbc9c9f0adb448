import os
import traceback

from databases import Database

from reelqueue.core.logger import logger

DATABASE_VERSION = "1.1"


def build_database(settings) -> Database:
    database_url = (
        settings.DATABASE_PATH
        if settings.DATABASE_TYPE == "sqlite"
        else settings.DATABASE_URL
    )
    return Database(
        f"{'sqlite' if settings.DATABASE_TYPE == 'sqlite' else 'postgresql+asyncpg'}://{'/' if settings.DATABASE_TYPE == 'sqlite' else ''}{database_url}"
    )


async def setup_database(database: Database, settings):
    try:
        if settings.DATABASE_TYPE == "sqlite":
            directory = os.path.dirname(settings.DATABASE_PATH)
            if directory:
                os.makedirs(directory, exist_ok=True)

            if not os.path.exists(settings.DATABASE_PATH):
                open(settings.DATABASE_PATH, "a").close()

        await database.connect()

        await database.execute(
            """
                CREATE TABLE IF NOT EXISTS db_version (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    version TEXT
                )
            """
        )

        current_version = await database.fetch_val(
            """
                SELECT version FROM db_version WHERE id = 1
            """
        )

        if current_version != DATABASE_VERSION:
            logger.log(
                "DATABASE",
                f"Database: Migration from {current_version} to {DATABASE_VERSION} version",
            )
            await database.execute("DROP TABLE IF EXISTS task_instances")
            await database.execute("DROP TABLE IF EXISTS scheduled_tasks")
            await database.execute(
                """
                    INSERT INTO db_version VALUES (1, :version)
                    ON CONFLICT (id) DO UPDATE SET version = :version
                """,
                {"version": DATABASE_VERSION},
            )

        # submission order for equal created_at; sqlite uses its rowid
        sequence_column = (
            ", seq BIGSERIAL" if settings.DATABASE_TYPE == "postgresql" else ""
        )
        await database.execute(
            f"""
                CREATE TABLE IF NOT EXISTS task_instances (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL,
                    trigger_source TEXT NOT NULL,
                    progress_percent INTEGER NOT NULL DEFAULT 0,
                    progress_message TEXT NOT NULL DEFAULT '',
                    attempt INTEGER NOT NULL,
                    max_attempts INTEGER NOT NULL,
                    retry_chain_id TEXT NOT NULL,
                    schedule_id TEXT,
                    created_at DOUBLE PRECISION NOT NULL,
                    started_at DOUBLE PRECISION,
                    completed_at DOUBLE PRECISION,
                    timeout DOUBLE PRECISION,
                    deadline DOUBLE PRECISION,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    params TEXT NOT NULL DEFAULT '{{}}',
                    result TEXT{sequence_column}
                )
            """
        )

        await database.execute(
            """
                CREATE TABLE IF NOT EXISTS scheduled_tasks (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    task_type TEXT NOT NULL,
                    params TEXT NOT NULL DEFAULT '{}',
                    priority TEXT NOT NULL,
                    interval_seconds DOUBLE PRECISION,
                    cron_expression TEXT,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    overlap_policy TEXT NOT NULL,
                    max_attempts INTEGER,
                    timeout DOUBLE PRECISION,
                    anchor_at DOUBLE PRECISION NOT NULL,
                    next_run_at DOUBLE PRECISION NOT NULL,
                    last_run_at DOUBLE PRECISION,
                    last_instance_id TEXT,
                    created_at DOUBLE PRECISION NOT NULL,
                    updated_at DOUBLE PRECISION NOT NULL
                )
            """
        )

        await database.execute(
            "CREATE INDEX IF NOT EXISTS idx_task_instances_status ON task_instances (status, priority)"
        )
        await database.execute(
            "CREATE INDEX IF NOT EXISTS idx_task_instances_chain ON task_instances (retry_chain_id)"
        )
        await database.execute(
            "CREATE INDEX IF NOT EXISTS idx_task_instances_created ON task_instances (created_at)"
        )
        await database.execute(
            "CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_next_run ON scheduled_tasks (enabled, next_run_at)"
        )

        if settings.DATABASE_TYPE == "sqlite":
            await database.execute("PRAGMA journal_mode=WAL")
            await database.execute("PRAGMA busy_timeout=30000")

        logger.log("DATABASE", f"Database ready ({settings.DATABASE_TYPE})")
    except Exception as e:
        logger.error(f"Error setting up the database: {e}")
        logger.exception(traceback.format_exc())
        raise
