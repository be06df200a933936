"""
Event schemas emitted by the task scheduler.

Components that need to react to scheduler activity (a chat UI, a
dashboard, tests) subscribe to these instead of the scheduler importing them.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union


class LogLevel(str, Enum):
    """Scheduler log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass(frozen=True)
class LogEvent:
    """A structured log entry written through ``TaskScheduler.log``."""
    timestamp: datetime
    level: LogLevel
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskCompleteEvent:
    """A task execution finished successfully."""
    task_id: str
    name: str
    result: Any = None


@dataclass(frozen=True)
class TaskFailedEvent:
    """A task failed and exhausted its retries."""
    task_id: str
    name: str
    error: str
    cause: Optional[BaseException] = None


SchedulerEvent = Union[LogEvent, TaskCompleteEvent, TaskFailedEvent]
EventListener = Callable[[SchedulerEvent], None]
