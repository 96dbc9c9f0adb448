class SchedulerError(Exception):
    """Base exception for scheduler-related errors."""

    def __init__(self, message: str, display_message: str = None):
        self.message = message
        self.display_message = display_message or message
        super().__init__(self.message)


class TaskValidationError(SchedulerError):
    """Raised when a submission is rejected before a task is created."""


class UnknownTaskTypeError(TaskValidationError):
    def __init__(self, task_type: str):
        self.task_type = task_type
        super().__init__(
            f"Unknown task type: {task_type}",
            f"No handler is registered for '{task_type}'.",
        )


class InvalidPriorityError(TaskValidationError):
    def __init__(self, priority):
        self.priority = priority
        super().__init__(
            f"Invalid priority: {priority!r}",
            "Priority must be one of: high, default, background.",
        )


class QueueFullError(SchedulerError):
    """Raised when a queue is at capacity. Callers should retry later or drop."""

    def __init__(self, queue_name: str, capacity: int):
        self.queue_name = queue_name
        self.capacity = capacity
        super().__init__(
            f"Queue {queue_name} is full ({capacity} tasks)",
            f"The {queue_name} queue is busy, please try again later.",
        )


class TaskNotFoundError(SchedulerError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class ScheduleValidationError(SchedulerError):
    """Raised when a scheduled task definition is invalid."""


class ScheduleNotFoundError(SchedulerError):
    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Scheduled task not found: {schedule_id}")


class InvalidTransitionError(SchedulerError):
    def __init__(self, task_id: str, current, target):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Task {task_id} cannot move from {getattr(current, 'value', current)} to {getattr(target, 'value', target)}"
        )


class TaskExecutionError(Exception):
    """Raised by task handlers. Retryable unless stated otherwise."""

    retryable = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class RetryableError(TaskExecutionError):
    retryable = True


class NonRetryableError(TaskExecutionError):
    """Permanent failure (e.g. invalid input); the retry chain ends here."""

    retryable = False


class TaskCancelledError(Exception):
    """Raised by a handler once it has observed its cancellation signal."""

    def __init__(self, message: str = "Task was cancelled"):
        self.message = message
        super().__init__(self.message)
