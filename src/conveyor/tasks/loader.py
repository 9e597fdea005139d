"""Task list loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import Task

DEFAULT_TASKS: tuple[Task, ...] = (
    Task(
        id="TASK-002",
        description=(
            "Build task card component displaying title, description, due date, "
            "priority badge, and status indicator"
        ),
    ),
    Task(
        id="TASK-004",
        description="Implement quick-add task input field for rapid task creation with minimal fields",
    ),
    Task(
        id="TASK-010",
        description=(
            "Implement filter panel with checkboxes/dropdowns for status, due date, "
            "priority, list, and tags"
        ),
    ),
)


class TaskLoadError(ConfigurationError):
    """Raised when a task file cannot be parsed or exceeds the task limit."""


def parse_tasks(entries: Iterable[Any], *, max_tasks: int) -> tuple[Task, ...]:
    """Validate raw task mappings, preserving order and duplicates."""

    tasks: list[Task] = []
    errors: list[str] = []
    for position, entry in enumerate(entries):
        try:
            tasks.append(Task.model_validate(entry))
        except ValidationError as exc:
            errors.append(f"Task #{position + 1} is invalid: {exc}")

    if errors:
        raise TaskLoadError("; ".join(errors))
    if not tasks:
        raise TaskLoadError("Task list is empty")
    if len(tasks) > max_tasks:
        raise TaskLoadError(f"Task list has {len(tasks)} entries; at most {max_tasks} allowed")
    return tuple(tasks)


def load_tasks(path: Path | None = None, *, max_tasks: int = 3) -> tuple[Task, ...]:
    """Load the ordered task list from a YAML file, or return the embedded list.

    The file holds a YAML sequence of ``{id, description}`` mappings, or a
    mapping with a ``tasks`` key holding that sequence.
    """

    if path is None:
        return parse_tasks((task.model_dump() for task in DEFAULT_TASKS), max_tasks=max_tasks)

    path = Path(path)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise TaskLoadError(f"Cannot read task file {path}: {exc}") from exc
    except yaml.YAMLError as exc:  # pragma: no cover - library type
        raise TaskLoadError(f"Failed to parse YAML in {path}: {exc}") from exc

    if isinstance(document, dict):
        document = document.get("tasks")
    if not isinstance(document, list):
        raise TaskLoadError(f"Task file {path} must contain a list of tasks")
    return parse_tasks(document, max_tasks=max_tasks)


__all__ = ["DEFAULT_TASKS", "TaskLoadError", "load_tasks", "parse_tasks"]
