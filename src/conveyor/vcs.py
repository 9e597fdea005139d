"""Git working-tree helpers and change verification."""

from __future__ import annotations

import logging
import re
from typing import Iterable

from .commands import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

# "XY path" or "XY old -> new"; the two status columns may be spaces.
_PORCELAIN_LINE = re.compile(r"^(?P<status>.{2}) (?P<path>.+)$")


def _unquote(path: str) -> str:
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        return path[1:-1].encode("utf-8").decode("unicode_escape").encode("latin-1").decode("utf-8")
    return path


def parse_porcelain(output: str) -> list[str]:
    """Return the paths listed by ``git status --porcelain`` output."""

    paths: list[str] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        match = _PORCELAIN_LINE.match(line)
        if match is None:
            paths.append(line.strip())
            continue
        path = match.group("path")
        if " -> " in path and match.group("status")[0] in {"R", "C"}:
            path = path.split(" -> ", 1)[1]
        paths.append(_unquote(path.strip()))
    return paths


class GitRepository:
    """Thin wrapper over the git commands the runner needs."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    async def git(self, *args: str) -> CommandResult:
        return await self.runner.run("git", *args)

    async def is_repository(self) -> bool:
        return (await self.git("rev-parse", "--git-dir")).ok

    async def status(self) -> CommandResult:
        return await self.git("status", "--porcelain")

    async def changed_paths(self) -> list[str]:
        """Return working-tree paths reported by git status.

        Raises ``RuntimeError`` if the status query fails.
        """

        result = await self.status()
        if not result.ok:
            raise RuntimeError(f"git status failed: {result.stderr.strip()}")
        return parse_porcelain(result.stdout)

    async def staged_paths(self) -> list[str]:
        result = await self.git("diff", "--cached", "--name-only")
        if not result.ok:
            raise RuntimeError(f"git diff --cached failed: {result.stderr.strip()}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def current_branch(self) -> str | None:
        result = await self.git("branch", "--show-current")
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def last_commit(self) -> str | None:
        result = await self.git("log", "--oneline", "-1")
        if not result.ok:
            return None
        return result.stdout.strip() or None


class ChangeVerifier:
    """Diagnostic cross-check of hook-observed files against git status.

    Never raises; it only informs log output.
    """

    def __init__(self, repository: GitRepository) -> None:
        self.repository = repository

    async def count_changed_files(self) -> int | None:
        """Number of changed paths in the working tree, or ``None`` if unknown."""

        try:
            return len(await self.repository.changed_paths())
        except Exception as exc:
            logger.warning("Could not verify file changes: %s", exc)
            return None

    async def check_task(self, task_id: str, files_changed: Iterable[str]) -> int | None:
        """Warn when neither the hooks nor git saw any change after a task."""

        observed = list(files_changed)
        count = await self.count_changed_files()
        if count is None:
            return None
        logger.info("Files changed after task %s: %d", task_id, count)
        if count == 0 and not observed:
            logger.warning(
                "Task %s completed but no files were changed; the task may not have produced code",
                task_id,
            )
        elif observed and count == 0:
            logger.info(
                "Hooks recorded %d file(s) but git reports a clean tree after task %s",
                len(observed),
                task_id,
            )
        return count


__all__ = ["ChangeVerifier", "GitRepository", "parse_porcelain"]
