"""Uniform event surface over streaming and non-streaming model calls.

The executor reports text through one adapter whichever mode a call uses.
In streaming mode chunks pass through as TextDelta events; in
non-streaming mode they are buffered and only surface as a single
LlmOutput, so a caller that understands only final text never sees
partial tokens.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from hive.events import (
    Complete,
    CompletionReason,
    EventDispatcher,
    LlmOutput,
    ProcessingWarning,
    SegmentComplete,
    TextDelta,
    ToolEnded,
    ToolNotice,
    ToolStarted,
)

logger = logging.getLogger(__name__)


class CallbackAdapter:
    """Wraps an EventDispatcher for one run.

    Guarantees:
    - at most one LlmOutput per step, via output();
    - a non-empty trailing buffer without tool markup is flushed as the
      final answer when complete() fires;
    - exactly one Complete event per run.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher,
        streaming: bool,
        has_tool_call: Callable[[str], bool] = lambda text: False,
    ) -> None:
        self._dispatcher = dispatcher
        self._streaming = streaming
        self._has_tool_call = has_tool_call
        self._buffer: list[str] = []
        self._completed = False

    @property
    def streaming(self) -> bool:
        return self._streaming

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def buffered(self) -> str:
        return "".join(self._buffer)

    def downgrade(self) -> None:
        """Switch to non-streaming after a fallback; drop any partial text."""
        self._streaming = False
        self._buffer.clear()

    # ------------------------------------------------------------------
    # Model text
    # ------------------------------------------------------------------

    def chunk(self, text: str) -> None:
        if not text:
            return
        if self._streaming:
            self._dispatcher.emit(TextDelta(text))
        else:
            self._buffer.append(text)

    def output(self, text: str) -> None:
        """Full text for the current step. Replaces anything buffered."""
        self._buffer.clear()
        self._dispatcher.emit(LlmOutput(text))

    def discard(self) -> None:
        """Drop buffered text from a step that will be replayed."""
        self._buffer.clear()

    def segment(self, text: str) -> None:
        """Finalize a run of streamed prose. No-op outside streaming mode."""
        if self._streaming and text.strip():
            self._dispatcher.emit(SegmentComplete(text))

    # ------------------------------------------------------------------
    # Tools and warnings
    # ------------------------------------------------------------------

    def notice(self, text: str) -> None:
        self._dispatcher.emit(ToolNotice(text))

    def tool_started(self, name: str, tool_input: str) -> None:
        self._dispatcher.emit(ToolStarted(name=name, input=tool_input))

    def tool_ended(self, name: str, result: str) -> None:
        self._dispatcher.emit(ToolEnded(name=name, result=result))

    def warning(self, kind: str, message: str) -> None:
        self._dispatcher.emit(ProcessingWarning(kind=kind, message=message))

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete(self, reason: CompletionReason, final_text: str = "", steps: int = 0) -> None:
        if self._completed:
            logger.warning("Ignoring duplicate completion (%s)", reason)
            return
        self._completed = True

        trailing = "".join(self._buffer)
        self._buffer.clear()
        if trailing.strip() and not self._has_tool_call(trailing):
            self._dispatcher.emit(LlmOutput(trailing))

        self._dispatcher.emit(Complete(reason=reason, final_text=final_text, steps=steps))
