import sys

from loguru import logger

from reelqueue.core.log_levels import CUSTOM_LOG_LEVELS, STANDARD_LOG_LEVELS


def setup_logger(level: str):
    # Configure custom log levels
    for level_name, level_config in CUSTOM_LOG_LEVELS.items():
        try:
            logger.level(level_name)
        except ValueError:
            logger.level(
                level_name,
                no=level_config["no"],
                icon=level_config["icon"],
                color=level_config["loguru_color"],
            )

    # Configure standard log levels (override defaults)
    for level_name, level_config in STANDARD_LOG_LEVELS.items():
        logger.level(
            level_name, icon=level_config["icon"], color=level_config["loguru_color"]
        )

    log_format = (
        "<white>{time:YYYY-MM-DD}</white> <magenta>{time:HH:mm:ss}</magenta> | "
        "<level>{level.icon}</level> <level>{level}</level> | "
        "<cyan>{module}</cyan>.<cyan>{function}</cyan> - <level>{message}</level>"
    )

    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "level": level,
                "format": log_format,
                "backtrace": False,
                "diagnose": False,
                "enqueue": True,
            }
        ]
    )


def log_startup_info(settings):
    logger.log(
        "REELQUEUE",
        f"Workers: high={settings.HIGH_QUEUE_WORKERS} default={settings.DEFAULT_QUEUE_WORKERS} background={settings.BACKGROUND_QUEUE_WORKERS} - Capacity: high={settings.HIGH_QUEUE_CAPACITY} default={settings.DEFAULT_QUEUE_CAPACITY} background={settings.BACKGROUND_QUEUE_CAPACITY}",
    )
    logger.log(
        "REELQUEUE",
        f"Database ({settings.DATABASE_TYPE}): {settings.DATABASE_PATH if settings.DATABASE_TYPE == 'sqlite' else settings.DATABASE_URL if settings.DATABASE_TYPE == 'postgresql' else 'in-memory'}",
    )
    logger.log(
        "REELQUEUE",
        f"Retry: max_attempts={settings.DEFAULT_MAX_ATTEMPTS} base={settings.RETRY_BASE_DELAY}s factor={settings.RETRY_BACKOFF_FACTOR} max={settings.RETRY_MAX_DELAY}s jitter={settings.RETRY_JITTER}",
    )
    logger.log(
        "REELQUEUE",
        f"Task Timeout: {settings.TASK_TIMEOUT}s - Cancel Grace: {settings.CANCEL_GRACE_PERIOD}s - Trigger Tick: {settings.SCHEDULER_TICK_INTERVAL}s",
    )
    logger.log(
        "REELQUEUE",
        f"History Retention: {settings.HISTORY_MAX_AGE}s / {settings.HISTORY_MAX_COUNT} tasks - Default Schedules: {settings.ENABLE_DEFAULT_SCHEDULES}",
    )


setup_logger("DEBUG")
