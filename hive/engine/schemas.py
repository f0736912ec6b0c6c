"""Data contract for the execution engine.

Messages are immutable once appended; trimming replaces whole lists.
Stream events are produced by a provider and consumed incrementally,
never stored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from hive.events import CompletionReason

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    """A single message in a conversation."""

    role: Role
    content: str | tuple[dict[str, Any], ...]

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role="assistant", content=content)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Build from a provider-style dict. Unknown roles map to user."""
        role = data.get("role")
        content = data.get("content", "")
        if isinstance(content, list):
            content = tuple(content)
        return cls(role="assistant" if role == "assistant" else "user", content=content)

    @property
    def text(self) -> str:
        """Content serialized to text (structured content as JSON)."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(list(self.content))

    def to_dict(self) -> dict[str, Any]:
        content = self.content if isinstance(self.content, str) else list(self.content)
        return {"role": self.role, "content": content}


@dataclass
class MessageHistory:
    """Per-session conversation: the original request plus everything after it."""

    original_request: Message | None = None
    conversation_history: list[Message] = field(default_factory=list)

    def messages(self) -> list[Message]:
        """[original_request?, *conversation_history] without a leading duplicate."""
        if self.original_request is None:
            return list(self.conversation_history)
        if self.conversation_history and self.conversation_history[0] == self.original_request:
            return list(self.conversation_history)
        return [self.original_request, *self.conversation_history]

    def clear(self) -> None:
        self.original_request = None
        self.conversation_history = []


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation parsed from model output. Lives for one step."""

    name: str
    input: str
    requires_approval: bool


@dataclass(frozen=True)
class StreamText:
    text: str


@dataclass(frozen=True)
class StreamUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int | None = None
    cache_read_tokens: int | None = None


StreamEvent = Union[StreamText, StreamUsage]


@dataclass
class RunResult:
    """Outcome of one AgenticExecutor.run() call."""

    reason: CompletionReason
    final_text: str
    steps: int
    messages: list[Message] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)  # assistant text per step
