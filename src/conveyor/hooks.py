"""Agent lifecycle hooks that derive run state from observed tool calls."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from .notify import SignedNotifier
from .tasks import RunState

logger = logging.getLogger(__name__)

HookCallback = Callable[[Mapping[str, Any], "str | None", Any], Awaitable[dict[str, Any]]]

SESSION_START = "SessionStart"
SESSION_END = "SessionEnd"
PRE_TOOL_USE = "PreToolUse"
POST_TOOL_USE = "PostToolUse"


class ToolKind(str, Enum):
    FILE_WRITE = "file_write"
    SHELL = "shell"
    OTHER = "other"


TOOL_KINDS: dict[str, ToolKind] = {
    "Write": ToolKind.FILE_WRITE,
    "Edit": ToolKind.FILE_WRITE,
    "Bash": ToolKind.SHELL,
    "BashOutput": ToolKind.SHELL,
}

# Input field names accepted per tool kind, tried in order. Older agent
# releases sent camelCase ``filePath`` and ``cmd``.
TARGET_FIELDS: dict[ToolKind, tuple[str, ...]] = {
    ToolKind.FILE_WRITE: ("file_path", "filePath"),
    ToolKind.SHELL: ("command", "cmd"),
    ToolKind.OTHER: (),
}
CONTENT_FIELDS = ("content", "file_content", "new_string")


@dataclass(frozen=True, slots=True)
class ToolEvent:
    """One tool call as seen by a hook."""

    tool_name: str
    tool_input: Mapping[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None
    tool_result: Any = None

    @classmethod
    def from_hook_input(cls, input_data: Mapping[str, Any], tool_use_id: str | None) -> "ToolEvent":
        tool_input = input_data.get("tool_input")
        if not isinstance(tool_input, Mapping):
            tool_input = {}
        result = input_data.get("tool_response", input_data.get("tool_result"))
        return cls(
            tool_name=str(input_data.get("tool_name") or ""),
            tool_input=tool_input,
            tool_use_id=tool_use_id or input_data.get("tool_use_id"),
            tool_result=result,
        )

    @property
    def kind(self) -> ToolKind:
        return TOOL_KINDS.get(self.tool_name, ToolKind.OTHER)

    @property
    def target(self) -> str | None:
        """File path for file writes, command line for shell tools."""

        for name in TARGET_FIELDS[self.kind]:
            value = self.tool_input.get(name)
            if isinstance(value, str) and value:
                return value
        return None


def continue_directive() -> dict[str, Any]:
    return {"continue_": True}


def allow_directive() -> dict[str, Any]:
    return {
        "continue_": True,
        "hookSpecificOutput": {
            "hookEventName": PRE_TOOL_USE,
            "permissionDecision": "allow",
        },
    }


def _preview(value: Any, limit: int = 500) -> str:
    if value is None:
        return "N/A"
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:limit]


class HookBridge:
    """Observes agent lifecycle events and updates the shared run state.

    The bridge does no sandboxing: every tool call is allowed. Callbacks
    never raise into the agent; internal faults are logged and the agent
    is told to continue.
    """

    def __init__(self, state: RunState, notifier: SignedNotifier) -> None:
        self.state = state
        self.notifier = notifier

    def callbacks(self) -> dict[str, HookCallback]:
        """Guarded callbacks keyed by agent hook event name."""

        return {
            SESSION_START: self._guarded(SESSION_START, self.on_session_start, continue_directive),
            SESSION_END: self._guarded(SESSION_END, self.on_session_end, continue_directive),
            PRE_TOOL_USE: self._guarded(PRE_TOOL_USE, self.on_pre_tool_use, allow_directive),
            POST_TOOL_USE: self._guarded(POST_TOOL_USE, self.on_post_tool_use, continue_directive),
        }

    async def on_session_start(self, input_data, tool_use_id, context) -> dict[str, Any]:
        logger.info("SessionStart hook triggered")
        logger.debug("SessionStart input: %s", _preview(dict(input_data), 2000))
        self.notifier.notify("running", "Initializing agent session...")
        return continue_directive()

    async def on_session_end(self, input_data, tool_use_id, context) -> dict[str, Any]:
        logger.info("SessionEnd hook triggered")
        logger.debug("SessionEnd input: %s", _preview(dict(input_data), 2000))
        # Lists every task id regardless of outcome; the sequencer's
        # completed list is authoritative.
        all_task_ids = [task.id for task in self.state.tasks]
        self.notifier.notify(
            "completed",
            "All tasks completed",
            all_task_ids,
            self.state.files_changed,
            "success",
        )
        return continue_directive()

    async def on_pre_tool_use(self, input_data, tool_use_id, context) -> dict[str, Any]:
        event = ToolEvent.from_hook_input(input_data, tool_use_id)
        logger.info("PreToolUse hook triggered - tool: %s, id: %s", event.tool_name, event.tool_use_id)
        if event.kind is ToolKind.FILE_WRITE:
            self._record(event)
        return allow_directive()

    async def on_post_tool_use(self, input_data, tool_use_id, context) -> dict[str, Any]:
        event = ToolEvent.from_hook_input(input_data, tool_use_id)
        logger.info("PostToolUse hook triggered - tool: %s, id: %s", event.tool_name, event.tool_use_id)
        if event.kind is ToolKind.FILE_WRITE:
            content = next(
                (event.tool_input[name] for name in CONTENT_FIELDS if isinstance(event.tool_input.get(name), str)),
                None,
            )
            logger.debug(
                "File operation: tool=%s path=%s content_length=%s result=%s",
                event.tool_name,
                event.target or "N/A",
                len(content) if content is not None else "N/A",
                _preview(event.tool_result),
            )
            self._record(event)
        elif event.kind is ToolKind.SHELL:
            logger.info("Shell command executed: %s", event.target or "N/A")
            logger.debug("Shell result: %s", _preview(event.tool_result))
        else:
            logger.debug("Tool %s result: %s", event.tool_name, _preview(event.tool_result))
        return continue_directive()

    def _record(self, event: ToolEvent) -> None:
        path = event.target
        if not path or not self.state.record_file(path):
            return
        logger.info("File change detected: %s", path)
        self.notifier.notify(
            "running",
            "",
            self.state.completed_task_ids,
            self.state.files_changed,
        )

    @staticmethod
    def _guarded(
        name: str,
        callback: HookCallback,
        fallback: Callable[[], dict[str, Any]],
    ) -> HookCallback:
        async def hook(input_data, tool_use_id, context) -> dict[str, Any]:
            try:
                return await callback(input_data or {}, tool_use_id, context)
            except Exception:
                logger.exception("%s hook failed; letting the agent continue", name)
                return fallback()

        hook.__name__ = f"{name}_hook"
        return hook


__all__ = [
    "HookBridge",
    "POST_TOOL_USE",
    "PRE_TOOL_USE",
    "SESSION_END",
    "SESSION_START",
    "TARGET_FIELDS",
    "TOOL_KINDS",
    "ToolEvent",
    "ToolKind",
    "allow_directive",
    "continue_directive",
]
