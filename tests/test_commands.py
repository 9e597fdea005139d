from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path

import pytest

from conveyor.commands import (
    LAUNCH_FAILURE_RETURNCODE,
    CommandRunner,
    FakeCommandRunner,
    completed,
    redact,
    sanitize_environment,
)

requires_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


@requires_sh
def test_runner_captures_output_and_exit_code(tmp_path: Path) -> None:
    runner = CommandRunner(tmp_path)

    result = asyncio.run(runner.run("sh", "-c", "echo out; echo err >&2; exit 3"))

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.args == ("sh", "-c", "echo out; echo err >&2; exit 3")


@requires_sh
def test_runner_uses_working_directory(tmp_path: Path) -> None:
    result = asyncio.run(CommandRunner(tmp_path).run("sh", "-c", "pwd"))

    assert result.ok
    assert os.path.realpath(result.stdout.strip()) == os.path.realpath(tmp_path)


@requires_sh
def test_arguments_are_not_shell_interpreted(tmp_path: Path) -> None:
    message = "feat: quote ' and \" and $(whoami) `id`"

    result = asyncio.run(CommandRunner(tmp_path).run("sh", "-c", 'printf %s "$1"', "sh", message))

    assert result.stdout == message


def test_missing_executable_reports_launch_failure(tmp_path: Path) -> None:
    result = asyncio.run(CommandRunner(tmp_path).run(str(tmp_path / "no-such-binary")))

    assert result.returncode == LAUNCH_FAILURE_RETURNCODE
    assert result.stderr


def test_sanitize_environment(monkeypatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/tmp/elsewhere")
    monkeypatch.setenv("VIRTUAL_ENV", "/tmp/venv")

    env = sanitize_environment({"EXTRA": "1"})

    assert "PYTHONPATH" not in env
    assert "VIRTUAL_ENV" not in env
    assert env["EXTRA"] == "1"


def test_redact_replaces_every_secret() -> None:
    text = "https://ghp_abc@github.com/acme/app.git ghp_abc"

    assert redact(text, "ghp_abc", None, "") == "https://***@github.com/acme/app.git ***"
    assert CommandRunner(secrets=["ghp_abc", ""]).redact(text).count("***") == 2


def test_fake_runner_replays_queued_responses() -> None:
    key = ("git", "status", "--porcelain")
    runner = FakeCommandRunner(
        {key: [completed(key, " M a.ts\n"), completed(key, "")]},
        responder=lambda args: completed(args, returncode=1) if args[1] == "push" else None,
    )

    async def scenario():
        return [
            await runner.run(*key),
            await runner.run(*key),
            await runner.run(*key),
            await runner.run("git", "push"),
            await runner.run("git", "add", "-A"),
        ]

    first, second, third, push, add = asyncio.run(scenario())

    assert first.stdout == " M a.ts\n"
    assert second.stdout == ""
    assert third.stdout == ""
    assert push.returncode == 1
    assert add.ok
    assert runner.invocations[-1] == ("git", "add", "-A")
    assert len(runner.invocations) == 5
