"""Agent boundary and message stream reduction."""

from .client import AgentClient, FakeAgentClient, HookCall, ToolPolicy
from .stream import MessageKind, MessageStreamReducer, StreamReduction, classify_message

__all__ = [
    "AgentClient",
    "FakeAgentClient",
    "HookCall",
    "MessageKind",
    "MessageStreamReducer",
    "StreamReduction",
    "ToolPolicy",
    "classify_message",
]
