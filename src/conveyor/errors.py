"""Error taxonomy and error-report rendering for Conveyor runs."""

from __future__ import annotations

import json
import traceback
from typing import Any


class ConveyorError(RuntimeError):
    """Base class for Conveyor errors."""


class ConfigurationError(ConveyorError):
    """Raised when required runtime configuration is missing or invalid."""


class AgentProtocolError(ConveyorError):
    """Raised when the agent stream emits an error message.

    Provider-specific details stay attached as structured fields so callers
    can inspect them without parsing the message text.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
        provider_error: Any = None,
        cause: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.provider_error = provider_error
        self.cause = cause


class TaskExecutionError(ConveyorError):
    """Raised when a task ends with a non-success result or no result at all."""

    def __init__(self, message: str, *, subtype: str | None = None) -> None:
        super().__init__(message)
        self.subtype = subtype


class BuildError(ConveyorError):
    """Raised when the build command fails."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class PublicationError(ConveyorError):
    """Raised by the publication stage; never fatal to the run."""

    def __init__(self, message: str, *, stage: str, committed: bool = False) -> None:
        super().__init__(message)
        self.stage = stage
        self.committed = committed


def error_details(exc: BaseException) -> dict[str, Any]:
    """Project an exception onto the fields used in error reports."""

    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()
    cause = exc.__cause__ or getattr(exc, "cause", None)
    return {
        "name": type(exc).__name__,
        "message": str(exc) or type(exc).__name__,
        "stack": stack or "No stack trace available",
        "code": getattr(exc, "code", None) or getattr(exc, "returncode", None),
        "cause": _describe(cause) if cause is not None else None,
        "status_code": getattr(exc, "status_code", None),
        "error_type": getattr(exc, "error_type", None),
    }


def format_error_report(exc: BaseException, title: str = "FATAL ERROR") -> str:
    """Render the console error block for an unrecovered fault."""

    details = error_details(exc)
    lines = [
        f"==================== {title} ====================",
        f"Name: {details['name']}",
        f"Message: {details['message']}",
        f"Code: {details['code'] if details['code'] is not None else 'N/A'}",
    ]
    if details["status_code"] is not None:
        lines.append(f"Provider Status Code: {details['status_code']}")
    if details["error_type"]:
        lines.append(f"Provider Error Type: {details['error_type']}")
    if details["cause"]:
        lines.append(f"Cause: {details['cause']}")
    lines.append(f"Stack:\n{details['stack']}")
    return "\n".join(lines)


def flatten_error(exc: BaseException) -> str:
    """Flatten an exception into the single text field carried by webhooks."""

    details = error_details(exc)
    text = details["message"]
    if details["status_code"] is not None:
        text += f"\nProvider Status Code: {details['status_code']}"
    if details["error_type"]:
        text += f"\nProvider Error Type: {details['error_type']}"
    text += f"\nStack: {details['stack']}"
    if details["cause"]:
        text += f"\nCause: {details['cause']}"
    return text


def _describe(value: Any) -> str:
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return repr(value)


__all__ = [
    "AgentProtocolError",
    "BuildError",
    "ConfigurationError",
    "ConveyorError",
    "PublicationError",
    "TaskExecutionError",
    "error_details",
    "flatten_error",
    "format_error_report",
]
