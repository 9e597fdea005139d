from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

import pytest

from conveyor.config import ConveyorSettings
from conveyor.tasks import Task


class RecordingNotifier:
    """Stands in for ``SignedNotifier``; keeps every event instead of posting it."""

    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[dict[str, Any]] = []
        self.drained = 0
        self.fail = fail

    def notify(
        self,
        status: str,
        current_task: str = "",
        completed_tasks: Sequence[str] = (),
        files_changed: Sequence[str] = (),
        build_status: str | None = None,
        error: str | None = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("notifier exploded")
        self.events.append(
            {
                "status": status,
                "currentTask": current_task,
                "completedTasks": list(completed_tasks),
                "filesChanged": list(files_changed),
                "buildStatus": build_status,
                "error": error,
            }
        )

    async def drain(self) -> None:
        self.drained += 1

    def statuses(self) -> list[tuple[str, str]]:
        return [(event["status"], event["currentTask"]) for event in self.events]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_settings(tmp_path: Path):
    def factory(**overrides: Any) -> ConveyorSettings:
        values: dict[str, Any] = {
            "anthropic_api_key": "sk-test",
            "webhook_url": "https://hooks.example.test/progress",
            "webhook_secret": "s3cr3t",
            "project_id": "proj-1",
            "github_url": None,
            "github_token": None,
            "workdir": tmp_path,
        }
        values.update(overrides)
        return ConveyorSettings(**values)

    return factory


@pytest.fixture
def three_tasks() -> list[Task]:
    return [
        Task(id="A", description="Create the header component"),
        Task(id="B", description="Add the quick-add input"),
        Task(id="C", description="Wire up the filter panel"),
    ]


def success_result(value: Any = "done") -> dict[str, Any]:
    return {"type": "result", "subtype": "success", "result": value}
