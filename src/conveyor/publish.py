"""Commit and push the run's changes to the remote repository."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, Sequence
from urllib.parse import urlsplit, urlunsplit

from .commands import CommandResult
from .errors import PublicationError
from .vcs import GitRepository

logger = logging.getLogger(__name__)

COMMITTER_NAME = "Conveyor Agent"
COMMITTER_EMAIL = "agent@conveyor.invalid"
REMOTE_NAME = "origin"
MAX_LISTED_FILES = 50

# Files the runner itself drops into the working tree; never published.
DEFAULT_DENYLIST: tuple[str, ...] = (
    "claude-agent-runner.mjs",
    "read-stdout.mjs",
    "read-stderr.mjs",
    "verify.mjs",
)


def authenticated_remote_url(url: str, token: str) -> str:
    """Embed ``token`` as the user part of an HTTPS remote URL."""

    parts = urlsplit(url)
    if not parts.hostname:
        raise PublicationError(f"Invalid repository URL: {url}", stage="setup")
    host = parts.hostname
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(("https", f"{token}@{host}", parts.path, "", ""))


def is_denylisted(path: str, denylist: Iterable[str] = DEFAULT_DENYLIST) -> bool:
    """True for runner files at the repository root only.

    ``tools/verify.mjs`` belongs to the project and is never matched.
    """

    return str(PurePosixPath(path.strip().strip('"'))) in set(denylist)


def ensure_ignore_entries(ignore_file: Path, entries: Sequence[str]) -> list[str]:
    """Append any missing ``entries`` to the ignore file. Returns what was added.

    Entries are root-anchored (``/verify.mjs``); an unanchored line already
    present for the same name counts as covering it.
    """

    existing: set[str] = set()
    text = ""
    if ignore_file.exists():
        text = ignore_file.read_text(encoding="utf-8")
        existing = {line.strip().lstrip("/") for line in text.splitlines()}
    missing = [f"/{entry}" for entry in entries if entry not in existing]
    if missing:
        prefix = "" if not text or text.endswith("\n") else "\n"
        with ignore_file.open("a", encoding="utf-8") as handle:
            handle.write(prefix + "".join(f"{entry}\n" for entry in missing))
    return missing


def compose_commit_message(task_ids: Sequence[str], files: Sequence[str]) -> str:
    lines = [
        "feat: Generated code by Conveyor agent",
        "",
        f"Tasks completed: {len(task_ids)}",
        f"Files changed: {len(files)}",
    ]
    if files:
        lines += ["", "Files in this commit:"]
        lines += [f"- {path}" for path in files[:MAX_LISTED_FILES]]
        if len(files) > MAX_LISTED_FILES:
            lines.append(f"... and {len(files) - MAX_LISTED_FILES} more files")
    lines += ["", "Completed tasks:"]
    lines += [f"- {task_id}" for task_id in task_ids]
    return "\n".join(lines)


@dataclass(slots=True)
class PublicationOutcome:
    committed: bool = False
    pushed: bool = False
    branch: str | None = None
    files: list[str] = field(default_factory=list)
    error: PublicationError | None = None

    @property
    def succeeded(self) -> bool:
        return self.pushed and self.error is None


class PublicationStage:
    """Stage, commit and push accumulated changes.

    Failures are returned on the outcome, never raised: a failure after
    the commit step keeps ``committed=True`` and nothing is rolled back.
    """

    def __init__(
        self,
        repository: GitRepository,
        *,
        remote_url: str,
        token: str,
        workdir: Path,
        default_branch: str = "main",
        denylist: Sequence[str] = DEFAULT_DENYLIST,
    ) -> None:
        self.repository = repository
        self.remote_url = remote_url
        self.token = token
        self.workdir = Path(workdir)
        self.default_branch = default_branch
        self.denylist = tuple(denylist)

    def _redact(self, text: str) -> str:
        text = self.repository.runner.redact(text)
        return text.replace(self.token, "***") if self.token else text

    async def run(self, completed_task_ids: Sequence[str], hook_files: Sequence[str] = ()) -> PublicationOutcome:
        outcome = PublicationOutcome()
        try:
            await self._ensure_repository()
            await self._configure_identity()
            await self._configure_remote()
            outcome.files = await self._commit(completed_task_ids, hook_files)
            outcome.committed = bool(outcome.files)
            outcome.branch = await self._resolve_branch()
            outcome.branch = await self._push(outcome.branch, committed=outcome.committed)
            outcome.pushed = True
            logger.info("Code committed and pushed to %s", outcome.branch)
        except PublicationError as exc:
            exc.committed = exc.committed or outcome.committed
            outcome.error = exc
            logger.warning(
                "Publication failed at %s stage (committed=%s): %s",
                exc.stage,
                exc.committed,
                self._redact(str(exc)),
            )
            await self._log_diagnostics()
        return outcome

    async def _ensure_repository(self) -> None:
        if await self.repository.is_repository():
            logger.info("Git repository is initialized")
            return
        logger.info("Git repository not initialized, initializing")
        self._require(await self.repository.git("init"), "setup", "git init failed")

    async def _configure_identity(self) -> None:
        self._require(
            await self.repository.git("config", "user.name", COMMITTER_NAME),
            "setup",
            "Could not configure git user.name",
        )
        self._require(
            await self.repository.git("config", "user.email", COMMITTER_EMAIL),
            "setup",
            "Could not configure git user.email",
        )

    async def _configure_remote(self) -> None:
        remote = authenticated_remote_url(self.remote_url, self.token)
        existing = await self.repository.git("remote", "get-url", REMOTE_NAME)
        if existing.ok:
            result = await self.repository.git("remote", "set-url", REMOTE_NAME, remote)
        else:
            result = await self.repository.git("remote", "add", REMOTE_NAME, remote)
        self._require(result, "setup", "Could not configure remote")
        logger.info("Remote URL configured: %s", self._redact(remote))

    async def _commit(self, task_ids: Sequence[str], hook_files: Sequence[str]) -> list[str]:
        status = self._require(await self.repository.status(), "commit", "git status failed")
        if not status.stdout.strip():
            logger.info("No changes to commit; last commit: %s", await self.repository.last_commit() or "(none)")
            return []

        try:
            added = ensure_ignore_entries(self.workdir / ".gitignore", self.denylist)
            if added:
                logger.info("Added %s to .gitignore", ", ".join(added))
        except OSError as exc:
            logger.warning("Could not update .gitignore (non-fatal): %s", exc)

        for name in self.denylist:
            await self.repository.git("rm", "--cached", "--ignore-unmatch", "-q", "--", name)
        self._require(await self.repository.git("add", "-A"), "commit", "git add failed")
        await self._unstage_denylisted()

        try:
            files = await self.repository.changed_paths()
        except RuntimeError as exc:
            logger.warning("Falling back to hook-recorded files: %s", exc)
            files = list(hook_files)
        files = [path for path in files if not is_denylisted(path, self.denylist)]
        if not files:
            logger.info("Only runner files changed; nothing to commit")
            return []

        logger.info(
            "Files to commit (%d): %s%s",
            len(files),
            ", ".join(files[:20]),
            "..." if len(files) > 20 else "",
        )
        message = compose_commit_message(task_ids, files)
        self._require(
            await self.repository.git("commit", "-m", message), "commit", "git commit failed"
        )
        logger.info("Commit created: %s", await self.repository.last_commit() or "(unknown)")
        return files

    async def _unstage_denylisted(self) -> None:
        try:
            staged = await self.repository.staged_paths()
        except RuntimeError as exc:
            logger.warning("Could not verify staged files (non-fatal): %s", exc)
            return
        for path in staged:
            if is_denylisted(path, self.denylist):
                logger.warning("Runner file still staged, unstaging: %s", path)
                result = await self.repository.git("reset", "-q", "--", path)
                if not result.ok:
                    # unborn HEAD: nothing to reset to, drop the new index entry
                    await self.repository.git("rm", "--cached", "-q", "--", path)

    async def _resolve_branch(self) -> str:
        branch = await self.repository.current_branch()
        if branch:
            logger.info("Current branch: %s", branch)
            return branch
        logger.info("No current branch detected, creating %s", self.default_branch)
        result = await self.repository.git("checkout", "-b", self.default_branch)
        if not result.ok:
            logger.warning("Could not create %s branch, will try to push anyway", self.default_branch)
        return self.default_branch

    async def _push(self, branch: str, *, committed: bool) -> str:
        result = await self.repository.git("push", "-u", REMOTE_NAME, branch)
        self._log_push(branch, result)
        if result.ok:
            return branch
        if branch != self.default_branch:
            logger.info("Push to %s failed, falling back to %s", branch, self.default_branch)
            fallback = await self.repository.git("push", "-u", REMOTE_NAME, self.default_branch)
            self._log_push(self.default_branch, fallback)
            if fallback.ok:
                return self.default_branch
            result = fallback
        raise PublicationError(
            "Git push failed. Stdout: "
            + self._redact(result.stdout[:500])
            + ", Stderr: "
            + self._redact(result.stderr[:500]),
            stage="push",
            committed=committed,
        )

    def _log_push(self, branch: str, result: CommandResult) -> None:
        logger.info(
            "Push to %s %s\nstdout: %s\nstderr: %s",
            branch,
            "succeeded" if result.ok else f"failed ({result.returncode})",
            self._redact(result.stdout.strip()) or "(empty)",
            self._redact(result.stderr.strip()) or "(empty)",
        )

    async def _log_diagnostics(self) -> None:
        status = await self.repository.status()
        logger.info("Git status after error: %s", self._redact(status.stdout.strip()) or "(empty)")
        logger.info("Last commit: %s", await self.repository.last_commit() or "(no commits)")

    def _require(self, result: CommandResult, stage: str, message: str) -> CommandResult:
        if not result.ok:
            detail = self._redact((result.stderr or result.stdout).strip()[:500])
            raise PublicationError(f"{message}: {detail}", stage=stage)
        return result


__all__ = [
    "COMMITTER_EMAIL",
    "COMMITTER_NAME",
    "DEFAULT_DENYLIST",
    "PublicationOutcome",
    "PublicationStage",
    "authenticated_remote_url",
    "compose_commit_message",
    "ensure_ignore_entries",
    "is_denylisted",
]
