"""Build step run after all tasks complete."""

from __future__ import annotations

import logging
import re
import shlex

from .commands import CommandResult, CommandRunner
from .errors import BuildError, ConfigurationError

logger = logging.getLogger(__name__)

# stderr matching this is advisory output, not a failure.
WARNING_PATTERN = re.compile(r"warning|WARN")


def build_failed(result: CommandResult) -> bool:
    """A build fails on a non-zero exit or stderr output, unless stderr is only warnings."""

    if result.ok and not result.stderr.strip():
        return False
    return WARNING_PATTERN.search(result.stderr) is None


class BuildStep:
    def __init__(self, runner: CommandRunner, command: str) -> None:
        self.runner = runner
        self.argv = shlex.split(command)
        if not self.argv:
            raise ConfigurationError("Build command must not be empty")

    async def run(self) -> CommandResult:
        logger.info("Executing build: %s (cwd=%s)", " ".join(self.argv), self.runner.cwd)
        result = await self.runner.run(*self.argv)
        logger.info(
            "Build finished with exit code %s (stdout %d chars, stderr %d chars)",
            result.returncode,
            len(result.stdout),
            len(result.stderr),
        )
        if result.stdout:
            logger.info("Build stdout: %s", _preview(result.stdout))
        if result.stderr:
            logger.info("Build stderr: %s", _preview(result.stderr))

        if build_failed(result):
            detail = result.stderr.strip() or result.stdout.strip()[-1000:]
            raise BuildError(
                f"Build failed: {detail}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.info("Build completed successfully")
        return result


def _preview(text: str, limit: int = 1000) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


__all__ = ["BuildStep", "WARNING_PATTERN", "build_failed"]
