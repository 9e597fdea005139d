"""Async subprocess runner used for build and git commands."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

# Exit status reported when the executable cannot be launched at all.
LAUNCH_FAILURE_RETURNCODE = 127


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def redact(text: str, *secrets: str | None) -> str:
    """Replace every occurrence of each non-empty secret with ``***``."""

    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a subprocess invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Execute commands asynchronously without a shell."""

    def __init__(self, cwd: Path | None = None, *, secrets: Sequence[str] = ()) -> None:
        self.cwd = Path(cwd) if cwd is not None else None
        self._secrets = tuple(secret for secret in secrets if secret)

    def redact(self, text: str) -> str:
        return redact(text, *self._secrets)

    async def run(self, *args: str) -> CommandResult:
        logger.debug("$ %s", self.redact(" ".join(args)))
        result = await self._invoke(*args)
        if not result.ok:
            logger.debug(
                "Command exited with %s: %s",
                result.returncode,
                self.redact(result.stderr.strip()[:500]),
            )
        return result

    async def _invoke(self, *args: str) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd is not None else None,
                env=sanitize_environment(),
            )
        except OSError as exc:
            return CommandResult(
                args=tuple(args),
                returncode=LAUNCH_FAILURE_RETURNCODE,
                stdout="",
                stderr=str(exc),
            )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(args), returncode=process.returncode, stdout=stdout, stderr=stderr)


Responder = Callable[[tuple[str, ...]], "CommandResult | None"]


class FakeCommandRunner(CommandRunner):
    """Test double that simulates command responses.

    ``responses`` maps an argv tuple to a result, or to a list of results
    consumed in order (the last one repeats). ``responder`` is consulted
    for anything not mapped.
    Unmatched commands succeed with empty output.
    """

    def __init__(  # type: ignore[override]
        self,
        responses: Mapping[tuple[str, ...], CommandResult | Iterable[CommandResult]] | None = None,
        *,
        responder: Responder | None = None,
        secrets: Sequence[str] = (),
    ) -> None:
        super().__init__(Path("/tmp/fake-workdir"), secrets=secrets)
        self._responses: dict[tuple[str, ...], list[CommandResult]] = {}
        for key, value in (responses or {}).items():
            values = [value] if isinstance(value, CommandResult) else list(value)
            self._responses[tuple(key)] = values
        self._responder = responder
        self._invocations: list[tuple[str, ...]] = []

    async def _invoke(self, *args: str) -> CommandResult:  # type: ignore[override]
        key = tuple(args)
        self._invocations.append(key)
        queued = self._responses.get(key)
        if queued:
            return queued.pop(0) if len(queued) > 1 else queued[0]
        if self._responder is not None:
            result = self._responder(key)
            if result is not None:
                return result
        return CommandResult(args=key, returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


def completed(args: Sequence[str], stdout: str = "", stderr: str = "", returncode: int = 0) -> CommandResult:
    """Build a ``CommandResult`` for scripted responses."""

    return CommandResult(args=tuple(args), returncode=returncode, stdout=stdout, stderr=stderr)


__all__ = [
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "LAUNCH_FAILURE_RETURNCODE",
    "completed",
    "redact",
    "sanitize_environment",
]
