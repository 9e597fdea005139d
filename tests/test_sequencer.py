from __future__ import annotations

import asyncio

import pytest

from conftest import success_result
from conveyor.agent import FakeAgentClient, HookCall, MessageStreamReducer
from conveyor.commands import FakeCommandRunner, completed
from conveyor.errors import TaskExecutionError
from conveyor.hooks import HookBridge, POST_TOOL_USE, PRE_TOOL_USE
from conveyor.sequencer import TaskSequencer, build_task_prompt, format_status_table
from conveyor.tasks import RunState, RunStatus, Task, TaskStatus
from conveyor.vcs import ChangeVerifier, GitRepository


def _sequencer(tasks, scripts, notifier, **kwargs) -> tuple[TaskSequencer, FakeAgentClient]:
    state = RunState(tasks=tuple(tasks))
    client = FakeAgentClient(scripts)
    client.attach_hooks(HookBridge(state, notifier).callbacks())
    return TaskSequencer(state, MessageStreamReducer(client), notifier, **kwargs), client


def test_tasks_run_in_order(three_tasks, notifier) -> None:
    sequencer, client = _sequencer(three_tasks, [[success_result()]] * 3, notifier)

    asyncio.run(sequencer.run())

    state = sequencer.state
    assert state.completed_task_ids == ["A", "B", "C"]
    assert [prompt for prompt, _ in client.invocations] == [build_task_prompt(t) for t in three_tasks]
    assert all(record.status is TaskStatus.COMPLETED for record in state.records)
    # finishing the run belongs to the pipeline
    assert state.status is RunStatus.RUNNING
    session = [("running", "Initializing agent session..."), ("completed", "All tasks completed")]
    assert notifier.statuses() == [
        ("running", "Create the header component"),
        *session,
        ("running", "Task completed: Create the header component"),
        ("running", "Add the quick-add input"),
        *session,
        ("running", "Task completed: Add the quick-add input"),
        ("running", "Wire up the filter panel"),
        *session,
        ("running", "Task completed: Wire up the filter panel"),
    ]
    assert notifier.events[-1]["completedTasks"] == ["A", "B", "C"]


def test_failure_aborts_remaining_tasks(three_tasks, notifier) -> None:
    scripts = [
        [success_result()],
        [{"type": "result", "subtype": "error_during_execution"}],
        [success_result()],
    ]
    sequencer, client = _sequencer(three_tasks, scripts, notifier)

    with pytest.raises(TaskExecutionError, match="error_during_execution"):
        asyncio.run(sequencer.run())

    state = sequencer.state
    assert state.completed_task_ids == ["A"]
    assert len(client.invocations) == 2
    assert [record.status for record in state.records] == [
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.PENDING,
    ]
    assert state.status is RunStatus.ERROR

    failure = notifier.events[-1]
    assert failure["status"] == "error"
    assert failure["currentTask"] == "Task failed: Add the quick-add input"
    assert failure["completedTasks"] == ["A"]
    assert failure["error"].startswith("Task execution failed: error_during_execution")
    assert "Stack:" in failure["error"]


def test_stream_fault_is_reported_and_reraised(three_tasks, notifier) -> None:
    sequencer, client = _sequencer(three_tasks, [[ConnectionError("stream dropped")]], notifier)

    with pytest.raises(ConnectionError):
        asyncio.run(sequencer.run())

    assert sequencer.state.completed_task_ids == []
    assert len(client.invocations) == 1
    assert notifier.events[-1]["status"] == "error"


def test_hooks_record_files_during_tasks(notifier) -> None:
    tasks = [Task(id="A", description="a"), Task(id="B", description="b")]
    scripts = [
        [
            HookCall(PRE_TOOL_USE, {"tool_name": "Write", "tool_input": {"file_path": "src/a.ts"}}),
            HookCall(POST_TOOL_USE, {"tool_name": "Write", "tool_input": {"file_path": "src/a.ts"}}),
            success_result(),
        ],
        [
            HookCall(POST_TOOL_USE, {"tool_name": "Edit", "tool_input": {"filePath": "src/b.ts"}}),
            success_result(),
        ],
    ]
    sequencer, _ = _sequencer(tasks, scripts, notifier)

    asyncio.run(sequencer.run())

    assert sequencer.state.files_changed == ["src/a.ts", "src/b.ts"]
    assert notifier.events[-1]["filesChanged"] == ["src/a.ts", "src/b.ts"]


def test_duplicate_task_ids_run_twice(notifier) -> None:
    task = Task(id="A", description="same")
    sequencer, client = _sequencer([task, task], [[success_result()]] * 2, notifier)

    asyncio.run(sequencer.run())

    assert sequencer.state.completed_task_ids == ["A", "A"]
    assert len(client.invocations) == 2


def test_verifier_runs_after_each_task(three_tasks, notifier, caplog) -> None:
    runner = FakeCommandRunner(
        {("git", "status", "--porcelain"): completed(("git", "status", "--porcelain"), "")}
    )
    sequencer, _ = _sequencer(
        three_tasks[:1],
        [[success_result()]],
        notifier,
        verifier=ChangeVerifier(GitRepository(runner)),
    )

    with caplog.at_level("WARNING", logger="conveyor.vcs"):
        asyncio.run(sequencer.run())

    assert runner.invocations == [("git", "status", "--porcelain")]
    assert "no files were changed" in caplog.text


def test_status_table_truncates_descriptions() -> None:
    state = RunState(tasks=(Task(id="LONG", description="x" * 80),))

    table = format_status_table(state.records)

    assert "| pending   | LONG" in table
    assert "x" * 50 + "..." in table


def test_session_end_fires_when_a_task_fails(three_tasks, notifier) -> None:
    scripts = [[{"type": "result", "subtype": "error_max_turns"}]]
    sequencer, client = _sequencer(three_tasks, scripts, notifier)

    with pytest.raises(TaskExecutionError):
        asyncio.run(sequencer.run())

    assert notifier.statuses() == [
        ("running", "Create the header component"),
        ("running", "Initializing agent session..."),
        ("completed", "All tasks completed"),
        ("error", "Task failed: Create the header component"),
    ]
    assert client.closed_streams == 1
