"""Reduce one agent message stream to a single result or error."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Mapping

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from ..errors import AgentProtocolError, TaskExecutionError
from ..tasks import Task
from .client import AgentClient, ToolPolicy

logger = logging.getLogger(__name__)

SUCCESS_SUBTYPE = "success"


class MessageKind(str, Enum):
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    ERROR = "error"
    OTHER = "other"


_TYPE_NAMES = {
    "assistant": MessageKind.ASSISTANT,
    "tool_use": MessageKind.TOOL_USE,
    "toolUse": MessageKind.TOOL_USE,
    "tool_result": MessageKind.TOOL_RESULT,
    "toolResult": MessageKind.TOOL_RESULT,
    "result": MessageKind.RESULT,
    "error": MessageKind.ERROR,
}


def _field(message: Any, name: str, default: Any = None) -> Any:
    if isinstance(message, Mapping):
        return message.get(name, default)
    return getattr(message, name, default)


def classify_message(message: Any) -> MessageKind:
    """Map an SDK message object or raw message mapping to its kind."""

    if isinstance(message, ResultMessage):
        return MessageKind.RESULT
    if isinstance(message, AssistantMessage):
        return MessageKind.ASSISTANT
    if isinstance(message, UserMessage):
        content = message.content if isinstance(message.content, list) else []
        if any(isinstance(block, ToolResultBlock) for block in content):
            return MessageKind.TOOL_RESULT
        return MessageKind.OTHER
    if isinstance(message, SystemMessage):
        if message.subtype == "error":
            return MessageKind.ERROR
        return MessageKind.OTHER
    return _TYPE_NAMES.get(_field(message, "type"), MessageKind.OTHER)


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def protocol_error(message: Any) -> AgentProtocolError:
    """Build an ``AgentProtocolError`` from an error-typed stream message."""

    error = _field(message, "error")
    if error is None and isinstance(message, SystemMessage):
        error = message.data.get("error", message.data)
    if error is None:
        error = {}

    text = _field(error, "message") or (str(error) if isinstance(error, BaseException) else None)
    status_code = _as_int(_field(error, "status") or _field(error, "statusCode") or _field(error, "status_code"))
    error_type = _field(error, "type")
    provider_error = _field(error, "anthropicError") or error
    cause = _field(error, "cause")

    exc = AgentProtocolError(
        f"Agent SDK error: {text or 'Unknown error'}",
        status_code=status_code,
        error_type=error_type if isinstance(error_type, str) else None,
        provider_error=provider_error,
        cause=cause,
    )
    if isinstance(cause, BaseException):
        exc.__cause__ = cause
    return exc


def assistant_error(message: Any) -> str | None:
    """Provider error tag the SDK sets on an assistant turn, e.g. ``rate_limit``."""

    if isinstance(message, AssistantMessage) and isinstance(message.error, str):
        return message.error
    return None


def result_error(message: Any, error_type: str | None = None) -> AgentProtocolError:
    """Build an ``AgentProtocolError`` from a result flagged ``is_error``."""

    result = _field(message, "result")
    errors = _field(message, "errors")
    text = "; ".join(str(error) for error in errors) if errors else result
    return AgentProtocolError(
        f"Agent SDK error: {text or error_type or 'Unknown error'}",
        status_code=_as_int(_field(message, "api_error_status")),
        error_type=error_type,
        provider_error=errors or result,
    )


def _dump(message: Any, limit: int) -> str:
    if isinstance(message, Mapping):
        text = json.dumps(message, default=str)
    else:
        text = repr(message)
    return text[:limit] + ("..." if len(text) > limit else "")


@dataclass(slots=True)
class StreamReduction:
    """Outcome of a successful reduction."""

    value: Any
    message_count: int


class MessageStreamReducer:
    """Drive the agent for one task and reduce its stream.

    ``Streaming`` ends in exactly one of: a success value, a
    ``TaskExecutionError`` (failed or missing result) or an
    ``AgentProtocolError``. Consumption stops at the first success result.
    """

    def __init__(self, client: AgentClient) -> None:
        self.client = client

    async def run(self, task: Task, prompt: str, policy: ToolPolicy) -> StreamReduction:
        logger.info("Starting agent query for task %s (prompt length %d)", task.id, len(prompt))
        return await self.reduce(self.client.stream(prompt, policy), task_id=task.id)

    async def reduce(self, stream: AsyncIterator[Any], *, task_id: str) -> StreamReduction:
        result_captured = False
        value: Any = None
        count = 0
        # Last provider error tagged on an assistant turn; the SDK reports
        # API failures this way and then closes with an ``is_error`` result.
        pending_error: str | None = None
        try:
            async for message in stream:
                count += 1
                kind = classify_message(message)
                logger.debug("Task %s message #%d: %s", task_id, count, kind.value)
                if kind is MessageKind.RESULT:
                    subtype = _field(message, "subtype")
                    if subtype != SUCCESS_SUBTYPE:
                        logger.error("Task %s failed with result subtype %s", task_id, subtype)
                        raise TaskExecutionError(f"Task execution failed: {subtype}", subtype=subtype)
                    if _field(message, "is_error"):
                        logger.error("Task %s result flagged as an API error", task_id)
                        raise result_error(message, pending_error)
                    if pending_error is not None:
                        logger.warning("Task %s recovered from provider error %s", task_id, pending_error)
                    value = _field(message, "result")
                    result_captured = True
                    logger.info("Task %s received success result", task_id)
                    logger.debug("Task %s result: %s", task_id, _dump(value, 5000))
                    break
                if kind is MessageKind.ERROR:
                    raise protocol_error(message)
                error_tag = assistant_error(message)
                if error_tag is not None:
                    logger.warning("Task %s assistant turn reported provider error %s", task_id, error_tag)
                    pending_error = error_tag
                self._log_side_channel(task_id, kind, message)
        except (TaskExecutionError, AgentProtocolError):
            raise
        except Exception as exc:
            if not result_captured:
                logger.error("Stream error before any result for task %s: %r", task_id, exc)
                raise
            logger.warning(
                "Ignoring stream error after success result for task %s: %r", task_id, exc
            )
        finally:
            await self._close(stream, task_id, result_captured)

        logger.info("Finished reading messages for task %s (total %d)", task_id, count)
        if not result_captured:
            logger.error("No result received from agent after %d messages", count)
            if pending_error is not None:
                raise AgentProtocolError(
                    f"Agent SDK error: {pending_error}", error_type=pending_error
                )
            raise TaskExecutionError("No result received from agent")
        return StreamReduction(value=value, message_count=count)

    @staticmethod
    async def _close(stream: AsyncIterator[Any], task_id: str, result_captured: bool) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            if result_captured:
                logger.info("Ignoring cleanup error after success for task %s: %r", task_id, exc)
            else:
                logger.warning("Error while closing stream for task %s: %r", task_id, exc)

    @staticmethod
    def _log_side_channel(task_id: str, kind: MessageKind, message: Any) -> None:
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock):
                    logger.info("Assistant [%s]: %s", task_id, block.text[:1000])
                elif isinstance(block, ToolUseBlock):
                    logger.info("Tool use [%s]: %s %s", task_id, block.name, _dump(block.input, 500))
            return
        if kind is MessageKind.OTHER:
            logger.debug("Unhandled message type for task %s: %s", task_id, _dump(message, 2000))
            return
        logger.debug("%s message for task %s: %s", kind.value, task_id, _dump(message, 2000))


__all__ = [
    "MessageKind",
    "MessageStreamReducer",
    "StreamReduction",
    "assistant_error",
    "classify_message",
    "protocol_error",
    "result_error",
]
