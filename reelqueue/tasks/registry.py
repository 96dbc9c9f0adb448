import inspect
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from reelqueue.core.logger import logger
from reelqueue.core.exceptions import UnknownTaskTypeError


class TaskHandler(ABC):
    """
    Capability contract implemented by task handlers.

    ``execute`` may be a coroutine function or a plain blocking function; the
    latter runs on a worker thread. Handlers should poll ``ctx.cancelled`` (or
    call ``ctx.raise_if_cancelled()``) between units of work, and must keep
    their external side effects idempotent: a worker abandons a handler that
    outlives its deadline and the abandoned call may still complete later.
    """

    name: str = ""
    description: str = ""
    timeout: Optional[float] = None  # seconds, overrides the global default

    @abstractmethod
    def execute(self, ctx, params: dict):
        pass


HandlerFactory = Callable[[], TaskHandler]


class TaskHandlerRegistry:
    def __init__(self):
        self._factories: Dict[str, HandlerFactory] = {}

    def register(
        self, type_name: str, factory: HandlerFactory, description: str = None
    ):
        if not type_name or not type_name.strip():
            raise ValueError("type_name is required")
        if not callable(factory):
            raise TypeError(f"Handler factory for {type_name} is not callable")

        if type_name in self._factories:
            logger.warning(f"Replacing task handler registered for {type_name}")

        self._factories[type_name] = factory
        if description is None and inspect.isclass(factory):
            description = getattr(factory, "description", "")
        logger.log(
            "SCHEDULER",
            f"Registered task handler {type_name}"
            + (f" - {description}" if description else ""),
        )

    def unregister(self, type_name: str) -> bool:
        return self._factories.pop(type_name, None) is not None

    def is_registered(self, type_name: str) -> bool:
        return type_name in self._factories

    def create(self, type_name: str) -> TaskHandler:
        factory = self._factories.get(type_name)
        if factory is None:
            raise UnknownTaskTypeError(type_name)
        return factory()

    def types(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, type_name: str) -> bool:
        return self.is_registered(type_name)

    def __len__(self) -> int:
        return len(self._factories)
