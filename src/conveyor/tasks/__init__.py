"""Task definitions and run state."""

from .loader import DEFAULT_TASKS, TaskLoadError, load_tasks, parse_tasks
from .models import RunState, RunStatus, Task, TaskRecord, TaskStatus

__all__ = [
    "DEFAULT_TASKS",
    "RunState",
    "RunStatus",
    "Task",
    "TaskLoadError",
    "TaskRecord",
    "TaskStatus",
    "load_tasks",
    "parse_tasks",
]
