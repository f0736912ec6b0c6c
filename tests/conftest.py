"""Shared fixtures: scripted provider, tool registry, executor factory."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest

from hive.api.sessions import SessionManager
from hive.config import Settings
from hive.engine.approval import ApprovalGate
from hive.engine.executor import AgenticExecutor
from hive.engine.retry import RetryController
from hive.engine.schemas import Message, StreamEvent, StreamText, StreamUsage
from hive.events import EventRecorder
from hive.tools.registry import ToolRegistry

# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Replays canned replies, one per create_message() call.

    Each script item is a reply string or an exception to raise. Streaming
    replies are split into small chunks so incremental parsing is exercised.
    """

    def __init__(self, replies: Sequence[str | BaseException], chunk_size: int = 7) -> None:
        self.replies = list(replies)
        self.chunk_size = chunk_size
        self.calls: list[dict[str, Any]] = []

    async def create_message(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] = (),
        *,
        stream: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append(
            {"system_prompt": system_prompt, "messages": list(messages), "stream": stream}
        )
        if not self.replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply

        yield StreamUsage(input_tokens=100, output_tokens=1)
        if stream:
            for i in range(0, len(reply), self.chunk_size):
                yield StreamText(reply[i : i + self.chunk_size])
        else:
            yield StreamText(reply)
        yield StreamUsage(output_tokens=max(1, len(reply) // 4))


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings(ANTHROPIC_API_KEY="test-key", max_steps=6)


@pytest.fixture
def tool_calls():
    """(name, input, context) for every tool invocation."""
    return []


@pytest.fixture
def registry(tool_calls):
    reg = ToolRegistry()

    async def browser_click(selector, context=None):
        tool_calls.append(("browser_click", selector, context))
        return f"Clicked {selector}"

    async def browser_read_text(tool_input):
        tool_calls.append(("browser_read_text", tool_input, None))
        return '{"title": "Example", "items": [1, 2]}'

    reg.register("browser_click", browser_click, "Click an element by CSS selector")
    reg.register("browser_read_text", browser_read_text, "Read the visible page text")
    return reg


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def make_executor(registry, settings, sleeper):
    """Factory: executor over a scripted provider with recorded backoff."""

    def _make(replies, approvals: ApprovalGate | None = None, **kwargs) -> tuple[AgenticExecutor, ScriptedProvider]:
        provider = ScriptedProvider(replies)
        retry = RetryController.from_settings(settings, sleep=sleeper, rng=lambda: 0.0)
        executor = AgenticExecutor(
            provider,
            kwargs.pop("registry", registry),
            approvals=approvals,
            settings=kwargs.pop("settings", settings),
            retry=retry,
            **kwargs,
        )
        return executor, provider

    return _make


@pytest.fixture
def make_sessions(registry):
    """Factory: SessionManager over a scripted provider."""

    def _make(replies, **overrides) -> tuple[SessionManager, ScriptedProvider]:
        provider = ScriptedProvider(replies)
        settings = Settings(ANTHROPIC_API_KEY="test-key", max_steps=6, **overrides)
        return SessionManager(provider, registry, settings), provider

    return _make
