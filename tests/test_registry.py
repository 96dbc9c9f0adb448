import pytest

from fakes import EchoHandler, make_settings
from reelqueue.core.exceptions import UnknownTaskTypeError
from reelqueue.tasks.models import TaskPriority
from reelqueue.tasks.registry import TaskHandler, TaskHandlerRegistry


def test_register_and_create():
    registry = TaskHandlerRegistry()
    registry.register("Echo", EchoHandler)

    assert "Echo" in registry
    assert registry.is_registered("Echo")
    assert isinstance(registry.create("Echo"), EchoHandler)
    assert registry.types() == ["Echo"]
    assert len(registry) == 1


def test_duplicate_registration_replaces():
    class Other(TaskHandler):
        async def execute(self, ctx, params):
            return None

    registry = TaskHandlerRegistry()
    registry.register("Echo", EchoHandler)
    registry.register("Echo", Other, "replacement")

    assert isinstance(registry.create("Echo"), Other)
    assert registry.types() == ["Echo"]


def test_unknown_and_invalid_registrations():
    registry = TaskHandlerRegistry()

    with pytest.raises(UnknownTaskTypeError):
        registry.create("Missing")
    with pytest.raises(ValueError):
        registry.register(" ", EchoHandler)
    with pytest.raises(TypeError):
        registry.register("Echo", "not callable")

    registry.register("Echo", EchoHandler)
    assert registry.unregister("Echo")
    assert not registry.unregister("Echo")


def test_settings_per_queue_lookup():
    settings = make_settings(HIGH_QUEUE_WORKERS=7, BACKGROUND_QUEUE_CAPACITY=9)

    assert settings.queue_workers(TaskPriority.HIGH) == 7
    assert settings.queue_capacity(TaskPriority.BACKGROUND) == 9


def test_settings_validation():
    assert make_settings(DATABASE_TYPE="postgres").DATABASE_TYPE == "postgresql"
    assert make_settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"
    assert make_settings(RETRY_JITTER=3).RETRY_JITTER == 1.0

    with pytest.raises(ValueError):
        make_settings(DEFAULT_QUEUE_WORKERS=0)
    with pytest.raises(ValueError):
        make_settings(TASK_TIMEOUT=0)
    with pytest.raises(ValueError):
        make_settings(DATABASE_TYPE="mongodb")
