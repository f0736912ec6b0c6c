"""Execution events and the synchronous event dispatcher.

The executor reports progress as a small set of tagged events instead of
a bundle of optional callbacks. Handlers are registered per event type and
called synchronously, in registration order, with errors isolated: one
broken handler never crashes the step loop or blocks other handlers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar, Union

logger = logging.getLogger(__name__)


class CompletionReason(StrEnum):
    DONE = "done"
    CANCELLED = "cancelled"
    MAX_STEPS = "max_steps"
    RETRIES_EXHAUSTED = "retries_exhausted"
    FATAL = "fatal"


@dataclass(frozen=True)
class TextDelta:
    """Incremental model text (streaming mode only)."""

    text: str


@dataclass(frozen=True)
class LlmOutput:
    """Full model text for one step, or a terminal message."""

    text: str


@dataclass(frozen=True)
class ToolNotice:
    """Human-readable progress line about tool handling."""

    text: str


@dataclass(frozen=True)
class ToolStarted:
    name: str
    input: str


@dataclass(frozen=True)
class ToolEnded:
    name: str
    result: str


@dataclass(frozen=True)
class SegmentComplete:
    """A finalized run of streamed prose (text before a tool call, or the answer)."""

    text: str


@dataclass(frozen=True)
class ProcessingWarning:
    """Non-terminal warning: the run is still in progress."""

    kind: str  # "fallback" or "retry"
    message: str


@dataclass(frozen=True)
class Complete:
    """Terminal event. Emitted exactly once per run."""

    reason: CompletionReason
    final_text: str = ""
    steps: int = 0


ExecutionEvent = Union[
    TextDelta,
    LlmOutput,
    ToolNotice,
    ToolStarted,
    ToolEnded,
    SegmentComplete,
    ProcessingWarning,
    Complete,
]

E = TypeVar("E")
EventHandler = Callable[[Any], None]

# Wire names used by transports (SSE "type" field)
EVENT_TYPES: dict[type, str] = {
    TextDelta: "text_delta",
    LlmOutput: "llm_output",
    ToolNotice: "tool_notice",
    ToolStarted: "tool_start",
    ToolEnded: "tool_end",
    SegmentComplete: "segment_complete",
    ProcessingWarning: "warning",
    Complete: "complete",
}


def event_to_dict(event: ExecutionEvent) -> dict[str, Any]:
    """Serialize an event for a transport, tagged with its wire type."""
    data: dict[str, Any] = {"type": EVENT_TYPES[type(event)]}
    data.update(
        {k: (str(v) if isinstance(v, StrEnum) else v) for k, v in vars(event).items()}
    )
    return data


class EventDispatcher:
    """Routes execution events to registered handlers.

    Handlers registered via on() receive events of one type; handlers
    registered via on_any() receive every event. Handler errors are logged
    but never propagate.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[EventHandler]] = defaultdict(list)
        self._any: list[EventHandler] = []

    def on(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug(
            "Registered handler for '%s': %s",
            event_type.__name__,
            getattr(handler, "__qualname__", handler),
        )

    def on_any(self, handler: EventHandler) -> None:
        self._any.append(handler)

    def emit(self, event: ExecutionEvent) -> None:
        for handler in [*self._handlers.get(type(event), []), *self._any]:
            self._safe_handle(handler, event)

    def _safe_handle(self, handler: EventHandler, event: ExecutionEvent) -> None:
        try:
            handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for event %s",
                getattr(handler, "__qualname__", handler),
                type(event).__name__,
            )


class EventRecorder:
    """Collects every event emitted on a dispatcher, in order."""

    def __init__(self, dispatcher: EventDispatcher | None = None) -> None:
        self.events: list[ExecutionEvent] = []
        self.dispatcher = dispatcher or EventDispatcher()
        self.dispatcher.on_any(self.events.append)

    def of_type(self, event_type: type[E]) -> list[E]:
        return [e for e in self.events if isinstance(e, event_type)]

    @property
    def completions(self) -> list[Complete]:
        return self.of_type(Complete)
