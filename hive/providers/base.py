"""Provider protocol consumed by the execution engine."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol, runtime_checkable

from hive.engine.schemas import Message, StreamEvent


class ProviderError(Exception):
    """A failed model call, carrying the provider's error type when known."""

    def __init__(self, error_type: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.message = message
        self.status_code = status_code

    @classmethod
    def from_body(cls, body: dict[str, Any], status_code: int | None = None) -> ProviderError:
        """Build from an Anthropic-style {"error": {"type", "message"}} body."""
        error = body.get("error", {}) if isinstance(body, dict) else {}
        return cls(
            error_type=error.get("type", "unknown"),
            message=error.get("message", "unknown error"),
            status_code=status_code,
        )


@runtime_checkable
class Provider(Protocol):
    """A model backend that turns a transcript into stream events.

    With stream=True, text events arrive incrementally in order. With
    stream=False, the provider yields the whole reply as a single text
    event (plus usage). Either way the iterator ends at end of message.
    """

    def create_message(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] = (),
        *,
        stream: bool = True,
    ) -> AsyncIterator[StreamEvent]: ...
