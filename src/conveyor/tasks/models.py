"""Task and run-state models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Task(BaseModel):
    """A unit of work handed to the agent. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable identifier for the task.")
    description: str = Field(..., description="Instruction given to the agent.")

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        # Ids are reported back verbatim, so they are never rewritten.
        if not value.strip():
            raise ValueError("Task id must not be empty")
        if value != value.strip():
            raise ValueError(f"Task id {value!r} has leading or trailing whitespace")
        return value

    @field_validator("description")
    @classmethod
    def _normalize_description(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task description must not be empty")
        return normalized


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


_ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


@dataclass(slots=True)
class TaskRecord:
    """Status of one task position in the run."""

    task: Task
    status: TaskStatus = TaskStatus.PENDING

    def advance(self, status: TaskStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Task {self.task.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status


@dataclass
class RunState:
    """Mutable state shared by the sequencer and the hook bridge for one run.

    ``files_changed`` and ``completed_task_ids`` only ever grow. Both are
    mutated from the event loop thread only.
    """

    tasks: tuple[Task, ...]
    records: list[TaskRecord] = field(init=False)
    completed_task_ids: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    current_task_description: str = ""
    _files: dict[str, None] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.tasks = tuple(self.tasks)
        self.records = [TaskRecord(task) for task in self.tasks]

    @property
    def files_changed(self) -> list[str]:
        """Recorded paths in first-seen order."""

        return list(self._files)

    def record_file(self, path: str) -> bool:
        """Record a touched path. Returns ``False`` if it was already known."""

        if path in self._files:
            return False
        self._files[path] = None
        return True

    def has_file(self, path: str) -> bool:
        return path in self._files

    def start_task(self, index: int) -> TaskRecord:
        self._ensure_active()
        record = self.records[index]
        record.advance(TaskStatus.RUNNING)
        self.current_task_description = record.task.description
        return record

    def complete_task(self, index: int) -> None:
        record = self.records[index]
        record.advance(TaskStatus.COMPLETED)
        if len(self.completed_task_ids) >= len(self.tasks):
            raise ValueError("More completions recorded than tasks in the run")
        self.completed_task_ids.append(record.task.id)

    def fail_task(self, index: int) -> None:
        self.records[index].advance(TaskStatus.FAILED)
        self.status = RunStatus.ERROR

    def finish(self) -> None:
        self._ensure_active()
        self.status = RunStatus.COMPLETED

    def abort(self) -> None:
        if self.status is RunStatus.RUNNING:
            self.status = RunStatus.ERROR

    @property
    def all_completed(self) -> bool:
        return len(self.completed_task_ids) == len(self.tasks)

    def _ensure_active(self) -> None:
        if self.status is not RunStatus.RUNNING:
            raise ValueError(f"Run already terminated with status {self.status.value}")


__all__ = ["RunState", "RunStatus", "Task", "TaskRecord", "TaskStatus"]
