from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from conveyor.tasks import (
    DEFAULT_TASKS,
    RunState,
    RunStatus,
    Task,
    TaskLoadError,
    TaskStatus,
    load_tasks,
)


def test_load_tasks_defaults_to_embedded_list() -> None:
    tasks = load_tasks()

    assert [task.id for task in tasks] == ["TASK-002", "TASK-004", "TASK-010"]
    assert tasks == DEFAULT_TASKS


def test_load_tasks_from_yaml_sequence(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(
        """
- id: T-1
  description: "  Add a login form  "
- id: T-2
  description: Add a logout button
""",
        encoding="utf-8",
    )

    tasks = load_tasks(path)

    assert [task.id for task in tasks] == ["T-1", "T-2"]
    assert tasks[0].description == "Add a login form"


def test_load_tasks_from_mapping_keeps_duplicates(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(
        """
tasks:
  - {id: T-1, description: first}
  - {id: T-1, description: again}
""",
        encoding="utf-8",
    )

    tasks = load_tasks(path)

    assert [task.id for task in tasks] == ["T-1", "T-1"]


def test_load_tasks_enforces_max_tasks(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(
        "\n".join(f"- {{id: T-{n}, description: task {n}}}" for n in range(4)),
        encoding="utf-8",
    )

    with pytest.raises(TaskLoadError, match="at most 3"):
        load_tasks(path)
    assert len(load_tasks(path, max_tasks=4)) == 4


@pytest.mark.parametrize(
    "content, message",
    [
        ("[]", "empty"),
        ("tasks: nope", "must contain a list"),
        ("- {id: T-1}", "Task #1 is invalid"),
        ("- {id: '', description: x}", "Task #1 is invalid"),
        ("- {id: ' T-1', description: x}", "Task #1 is invalid"),
    ],
)
def test_load_tasks_rejects_bad_files(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(TaskLoadError, match=message):
        load_tasks(path)


def test_load_tasks_missing_file(tmp_path: Path) -> None:
    with pytest.raises(TaskLoadError, match="Cannot read task file"):
        load_tasks(tmp_path / "missing.yaml")


@pytest.mark.parametrize("task_id", [" T-1", "T-1 ", "T-1\n"])
def test_task_id_with_surrounding_whitespace_is_rejected(task_id: str) -> None:
    with pytest.raises(ValidationError, match="whitespace"):
        Task(id=task_id, description="desc")


def test_task_is_immutable() -> None:
    task = Task(id="T-1", description="desc")

    with pytest.raises(ValidationError):
        task.id = "T-2"


def test_record_file_keeps_first_seen_order() -> None:
    state = RunState(tasks=(Task(id="A", description="a"),))

    assert state.record_file("src/b.ts") is True
    assert state.record_file("src/a.ts") is True
    assert state.record_file("src/b.ts") is False

    assert state.files_changed == ["src/b.ts", "src/a.ts"]
    assert state.has_file("src/a.ts")


def test_run_state_transitions(three_tasks) -> None:
    state = RunState(tasks=tuple(three_tasks))

    record = state.start_task(0)
    assert record.status is TaskStatus.RUNNING
    assert state.current_task_description == three_tasks[0].description

    state.complete_task(0)
    assert state.completed_task_ids == ["A"]

    with pytest.raises(ValueError):
        state.complete_task(0)
    with pytest.raises(ValueError):
        state.complete_task(1)

    state.start_task(1)
    state.fail_task(1)
    assert state.status is RunStatus.ERROR
    assert [r.status for r in state.records] == [
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.PENDING,
    ]
    with pytest.raises(ValueError, match="already terminated"):
        state.start_task(2)
    assert not state.all_completed


def test_duplicate_ids_complete_per_position() -> None:
    task = Task(id="A", description="a")
    state = RunState(tasks=(task, task))

    for index in range(2):
        state.start_task(index)
        state.complete_task(index)
    state.finish()

    assert state.completed_task_ids == ["A", "A"]
    assert state.all_completed
    assert state.status is RunStatus.COMPLETED


def test_abort_keeps_terminal_status() -> None:
    state = RunState(tasks=(Task(id="A", description="a"),))
    state.abort()

    assert state.status is RunStatus.ERROR
    with pytest.raises(ValueError):
        state.finish()
