"""Sequential task execution with abort-on-first-failure."""

from __future__ import annotations

import logging
from typing import Iterable

from .agent import MessageStreamReducer, ToolPolicy
from .errors import TaskExecutionError, flatten_error
from .notify import SignedNotifier
from .tasks import RunState, Task, TaskRecord
from .vcs import ChangeVerifier

logger = logging.getLogger(__name__)

TASK_PROMPT_TEMPLATE = """Task: {description}

You are implementing this task in the project in the current working directory.

IMPORTANT: You must actually create or modify code files to complete this task. Simply acknowledging the task is not sufficient.

To complete this task:
1. Read existing files to understand the codebase structure
2. Create new files or modify existing ones with actual implementation code
3. Follow the conventions and guidelines described in CLAUDE.md
4. Test your implementation if needed

The task is only considered complete when you have created or modified actual code files (not just documentation or configuration).

Execute the necessary file operations and code changes to complete this task."""


def build_task_prompt(task: Task) -> str:
    return TASK_PROMPT_TEMPLATE.format(description=task.description)


def format_status_table(records: Iterable[TaskRecord]) -> str:
    lines = [
        "| Status    | Task ID              | Description",
        "|-----------|----------------------|----------------------------------------",
    ]
    for record in records:
        description = record.task.description
        if len(description) > 50:
            description = description[:50] + "..."
        lines.append(f"| {record.status.value:<9} | {record.task.id:<20} | {description}")
    return "\n".join(lines)


class TaskSequencer:
    """Runs each task once, in order, stopping at the first failure."""

    def __init__(
        self,
        state: RunState,
        reducer: MessageStreamReducer,
        notifier: SignedNotifier,
        *,
        verifier: ChangeVerifier | None = None,
        policy: ToolPolicy | None = None,
    ) -> None:
        self.state = state
        self.reducer = reducer
        self.notifier = notifier
        self.verifier = verifier
        self.policy = policy or ToolPolicy()

    async def run(self) -> None:
        """Execute all tasks of the run state.

        Raises the first task failure after reporting it; later tasks are
        never attempted.
        """

        state = self.state
        logger.info("Processing %d task(s)", len(state.tasks))
        logger.info("Task status:\n%s", format_status_table(state.records))

        for index, task in enumerate(state.tasks):
            state.start_task(index)
            logger.info(
                "Starting task %s (%d/%d): %s",
                task.id,
                index + 1,
                len(state.tasks),
                task.description,
                extra={
                    "completed_so_far": len(state.completed_task_ids),
                    "files_so_far": len(state.files_changed),
                },
            )
            self.notifier.notify(
                "running", task.description, state.completed_task_ids, state.files_changed
            )

            try:
                reduction = await self.reducer.run(task, build_task_prompt(task), self.policy)
            except Exception as exc:
                state.fail_task(index)
                logger.error("Task %s failed: %s", task.id, exc)
                logger.error("Task status:\n%s", format_status_table(state.records))
                self.notifier.notify(
                    "error",
                    f"Task failed: {task.description}",
                    state.completed_task_ids,
                    state.files_changed,
                    error=flatten_error(exc),
                )
                raise

            state.complete_task(index)
            logger.info(
                "Task %s completed after %d messages (%d/%d done)",
                task.id,
                reduction.message_count,
                len(state.completed_task_ids),
                len(state.tasks),
            )
            if self.verifier is not None:
                await self.verifier.check_task(task.id, state.files_changed)
            logger.info("Task status:\n%s", format_status_table(state.records))
            self.notifier.notify(
                "running",
                f"Task completed: {task.description}",
                state.completed_task_ids,
                state.files_changed,
            )

        if not state.all_completed:
            raise TaskExecutionError(
                f"Only {len(state.completed_task_ids)} of {len(state.tasks)} tasks completed"
            )
        logger.info("All tasks completed: %s", ", ".join(state.completed_task_ids))


__all__ = ["TASK_PROMPT_TEMPLATE", "TaskSequencer", "build_task_prompt", "format_status_table"]
