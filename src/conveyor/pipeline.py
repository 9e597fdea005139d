"""End-to-end run: tasks, build, publication, exit code."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from . import __version__
from .agent import AgentClient, MessageStreamReducer, ToolPolicy
from .build import BuildStep
from .commands import CommandRunner
from .config import ConveyorSettings, load_settings
from .errors import ConfigurationError, flatten_error, format_error_report
from .hooks import HookBridge
from .notify import SignedNotifier
from .publish import PublicationOutcome, PublicationStage
from .sequencer import TaskSequencer, format_status_table
from .tasks import RunState, Task, TaskStatus, load_tasks
from .vcs import ChangeVerifier, GitRepository

logger = logging.getLogger(__name__)

_SKIPPED_DIRS = {"node_modules", ".git", "dist", "build"}
_VISIBLE_DOT_ENTRIES = {".claude", ".gitignore"}


def configure_logging(level: str) -> None:
    """Configure root logging for the runner."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def list_workspace_files(root: Path) -> list[Path]:
    """Files under ``root``, skipping dependency, output and hidden directories."""

    found: list[Path] = []
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(
            name
            for name in dirs
            if name not in _SKIPPED_DIRS and (not name.startswith(".") or name in _VISIBLE_DOT_ENTRIES)
        )
        for name in sorted(files):
            if name.startswith(".") and name not in _VISIBLE_DOT_ENTRIES:
                continue
            found.append(Path(current, name).relative_to(root))
    return found


@dataclass(slots=True)
class RunResult:
    state: RunState
    publication: PublicationOutcome | None = None


class Pipeline:
    """Wires the run together and owns its single ``RunState``."""

    def __init__(
        self,
        settings: ConveyorSettings,
        tasks: Sequence[Task],
        *,
        notifier: SignedNotifier | None = None,
        agent_client: AgentClient | None = None,
        command_runner: CommandRunner | None = None,
        policy: ToolPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.state = RunState(tasks=tuple(tasks))
        self.notifier = notifier or SignedNotifier(
            settings.webhook_url,
            settings.webhook_secret,
            settings.project_id,
            timeout=settings.webhook_timeout,
        )
        self.runner = command_runner or CommandRunner(
            settings.workdir, secrets=[settings.github_token or ""]
        )
        self.repository = GitRepository(self.runner)
        self.verifier = ChangeVerifier(self.repository)
        self.bridge = HookBridge(self.state, self.notifier)
        self.agent_client = agent_client or AgentClient(model=settings.model, cwd=settings.workdir)
        self.agent_client.attach_hooks(self.bridge.callbacks())
        self.sequencer = TaskSequencer(
            self.state,
            MessageStreamReducer(self.agent_client),
            self.notifier,
            verifier=self.verifier,
            policy=policy,
        )
        self.build = BuildStep(self.runner, settings.build_command)

    async def run(self) -> RunResult:
        """Run tasks, build and publish. Raises on task or build failure."""

        state = self.state
        self._log_startup()
        self.notifier.notify("running", "Starting task execution...")
        try:
            await self.sequencer.run()
            self._log_workspace()
            self.notifier.notify(
                "running",
                "Running build command...",
                state.completed_task_ids,
                state.files_changed,
                "building",
            )
            await self.build.run()
        except Exception as exc:
            state.abort()
            # Task failures were already reported by the sequencer.
            if not any(record.status is TaskStatus.FAILED for record in state.records):
                self.notifier.notify(
                    "error",
                    "Build failed" if state.all_completed else f"Run failed: {state.current_task_description}",
                    state.completed_task_ids,
                    state.files_changed,
                    error=flatten_error(exc),
                )
            raise

        self.notifier.notify(
            "completed", "Build successful", state.completed_task_ids, state.files_changed, "success"
        )
        result = RunResult(state=state)
        if self.settings.publication_enabled:
            result.publication = await self._publish()
        else:
            logger.info("Repository URL or token not provided, skipping commit/push")
        state.finish()
        logger.info("Final task status:\n%s", format_status_table(state.records))
        return result

    async def _publish(self) -> PublicationOutcome:
        state = self.state
        self.notifier.notify(
            "running", "Committing code to GitHub...", state.completed_task_ids, state.files_changed
        )
        stage = PublicationStage(
            self.repository,
            remote_url=self.settings.github_url or "",
            token=self.settings.github_token or "",
            workdir=self.settings.workdir,
            default_branch=self.settings.default_branch,
        )
        outcome = await stage.run(state.completed_task_ids, state.files_changed)
        if outcome.succeeded:
            current_task = "Code committed and pushed to GitHub"
        else:
            logger.warning("Commit/push failed, but code generation succeeded")
            current_task = "Build successful (Git push failed)"
        self.notifier.notify(
            "completed", current_task, state.completed_task_ids, state.files_changed, "success"
        )
        return outcome

    def _log_startup(self) -> None:
        settings = self.settings
        logger.info(
            "Starting Conveyor run",
            extra={
                "version": __version__,
                "project_id": settings.project_id,
                "task_count": len(self.state.tasks),
                "workdir": str(settings.workdir),
                "model": settings.model,
                "publication_enabled": settings.publication_enabled,
            },
        )
        for task in self.state.tasks:
            logger.info("Task %s: %s", task.id, task.description)
        claude_md = settings.workdir / ".claude" / "CLAUDE.md"
        if claude_md.is_file():
            content = claude_md.read_text(encoding="utf-8", errors="replace")
            logger.info("CLAUDE.md found at %s (%d characters)", claude_md, len(content))
        else:
            logger.info("CLAUDE.md not found at %s", claude_md)

    def _log_workspace(self) -> None:
        logger.info("Files tracked by hooks (%d): %s", len(self.state.files_changed), self.state.files_changed)
        try:
            files = list_workspace_files(self.settings.workdir)
        except OSError as exc:
            logger.warning("Could not list working directory files: %s", exc)
            return
        sample = ", ".join(str(path) for path in files[:30])
        logger.info("Total files in working directory: %d; sample: %s", len(files), sample)
        if len(files) > 30:
            logger.info("... and %d more files", len(files) - 30)


async def run_pipeline(pipeline: Pipeline) -> int:
    """Run and return the process exit code; always drains notifications."""

    try:
        await pipeline.run()
        logger.info("Run completed successfully")
        return 0
    except Exception as exc:
        logger.error(format_error_report(exc))
        return 1
    finally:
        await pipeline.notifier.drain()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run a fixed list of coding tasks through the agent, build, and publish."
    )
    parser.add_argument("--tasks-file", type=Path, default=None, help="YAML task list to run")
    parser.add_argument("--workdir", type=Path, default=None, help="Project working directory")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for the ``conveyor`` command."""

    args = build_parser().parse_args(argv)
    overrides = {}
    if args.tasks_file is not None:
        overrides["tasks_file"] = args.tasks_file
    if args.workdir is not None:
        overrides["workdir"] = args.workdir

    try:
        settings = load_settings(**overrides)
        configure_logging(settings.log_level)
        tasks = load_tasks(settings.tasks_file, max_tasks=settings.max_tasks)
        pipeline = Pipeline(settings, tasks)
    except ConfigurationError as exc:
        configure_logging("INFO")
        logger.error(format_error_report(exc, "CONFIGURATION ERROR"))
        raise SystemExit(1)

    exit_code = asyncio.run(run_pipeline(pipeline))
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
