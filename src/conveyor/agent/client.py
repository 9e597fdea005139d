"""Agent boundary: builds SDK options and opens one message stream per prompt."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from claude_agent_sdk import ClaudeAgentOptions, HookMatcher, SystemMessage, query

from ..hooks import SESSION_END, SESSION_START, HookCallback

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS = ("Read", "Write", "Edit", "Glob", "Grep", "Bash", "BashOutput")
DEFAULT_DISALLOWED_TOOLS = ("WebFetch", "WebSearch")

# Not hook events the SDK dispatches; fired around each stream instead.
SESSION_EVENTS = (SESSION_START, SESSION_END)


@dataclass(frozen=True, slots=True)
class ToolPolicy:
    """Which tools the agent may use and how permissions are requested."""

    allowed_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS
    disallowed_tools: tuple[str, ...] = DEFAULT_DISALLOWED_TOOLS
    permission_mode: str = "default"


class AgentClient:
    """Open agent message streams through the Claude Agent SDK."""

    def __init__(
        self,
        *,
        model: str,
        cwd: Path,
        hooks: Mapping[str, HookCallback] | None = None,
        setting_sources: Sequence[str] = ("project",),
    ) -> None:
        self.model = model
        self.cwd = Path(cwd)
        self.hooks = dict(hooks or {})
        self.setting_sources = list(setting_sources)

    def attach_hooks(self, hooks: Mapping[str, HookCallback]) -> None:
        self.hooks = dict(hooks)

    def build_options(self, policy: ToolPolicy) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            model=self.model,
            allowed_tools=list(policy.allowed_tools),
            disallowed_tools=list(policy.disallowed_tools),
            permission_mode=policy.permission_mode,
            setting_sources=self.setting_sources,
            cwd=self.cwd,
            hooks={
                event: [HookMatcher(hooks=[callback])]
                for event, callback in self.hooks.items()
                if event not in SESSION_EVENTS
            },
        )

    def stream(self, prompt: str, policy: ToolPolicy) -> AsyncIterator[Any]:
        """Open one agent stream, bracketed by the session callbacks.

        SessionStart fires before the first message is read and SessionEnd
        fires once the stream is closed, whether it ended, failed or was
        abandoned after a result.
        """

        return self._with_session_hooks(self._open(prompt, policy))

    def _open(self, prompt: str, policy: ToolPolicy) -> AsyncIterator[Any]:
        return query(prompt=prompt, options=self.build_options(policy))

    async def _with_session_hooks(self, inner: AsyncIterator[Any]) -> AsyncIterator[Any]:
        session_id: str | None = None
        await self._fire(
            SESSION_START,
            {"hook_event_name": SESSION_START, "source": "startup", "cwd": str(self.cwd)},
        )
        try:
            async for message in inner:
                if isinstance(message, SystemMessage) and message.subtype == "init":
                    session_id = message.data.get("session_id", session_id)
                yield message
        finally:
            try:
                aclose = getattr(inner, "aclose", None)
                if aclose is not None:
                    await aclose()
            finally:
                await self._fire(
                    SESSION_END,
                    {"hook_event_name": SESSION_END, "reason": "other", "session_id": session_id},
                )

    async def _fire(self, event: str, input_data: dict[str, Any]) -> None:
        callback = self.hooks.get(event)
        if callback is None:
            return
        try:
            await callback(input_data, None, None)
        except Exception:
            logger.exception("%s callback failed", event)


@dataclass(frozen=True, slots=True)
class HookCall:
    """Scripted step for ``FakeAgentClient``: invoke a registered hook."""

    event: str
    input_data: Mapping[str, Any]
    tool_use_id: str | None = None


class FakeAgentClient(AgentClient):
    """Test double that replays scripted message streams.

    Each script is consumed by one ``stream`` call. Items are yielded in
    order, except that ``HookCall`` items invoke the registered hook and
    exception instances are raised from the iterator.
    """

    def __init__(self, scripts: Iterable[Iterable[Any]] | None = None) -> None:  # type: ignore[override]
        super().__init__(model="fake-model", cwd=Path("/tmp/fake-workdir"))
        self._scripts = [list(script) for script in (scripts or [])]
        self._invocations: list[tuple[str, ToolPolicy]] = []
        self.closed_streams = 0

    @property
    def invocations(self) -> list[tuple[str, ToolPolicy]]:
        return self._invocations

    def _open(self, prompt: str, policy: ToolPolicy) -> AsyncIterator[Any]:
        self._invocations.append((prompt, policy))
        script = self._scripts.pop(0) if self._scripts else []
        return self._replay(script)

    async def _replay(self, script: list[Any]) -> AsyncIterator[Any]:
        try:
            for item in script:
                if isinstance(item, HookCall):
                    callback = self.hooks.get(item.event)
                    if callback is not None:
                        await callback(dict(item.input_data), item.tool_use_id, None)
                    continue
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed_streams += 1


__all__ = [
    "AgentClient",
    "DEFAULT_ALLOWED_TOOLS",
    "DEFAULT_DISALLOWED_TOOLS",
    "FakeAgentClient",
    "HookCall",
    "SESSION_EVENTS",
    "ToolPolicy",
]
