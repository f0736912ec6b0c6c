"""Tests for EventDispatcher, event serialization and CallbackAdapter."""

import pytest

from hive.engine.callbacks import CallbackAdapter
from hive.events import (
    Complete,
    CompletionReason,
    EventDispatcher,
    EventRecorder,
    LlmOutput,
    ProcessingWarning,
    SegmentComplete,
    TextDelta,
    ToolEnded,
    event_to_dict,
)

# ---------------------------------------------------------------------------
# EventDispatcher
# ---------------------------------------------------------------------------


class TestDispatcher:
    def test_typed_handlers_in_registration_order(self):
        dispatcher = EventDispatcher()
        seen = []
        dispatcher.on(TextDelta, lambda e: seen.append(("first", e.text)))
        dispatcher.on(TextDelta, lambda e: seen.append(("second", e.text)))
        dispatcher.on(LlmOutput, lambda e: seen.append(("output", e.text)))

        dispatcher.emit(TextDelta("hi"))

        assert seen == [("first", "hi"), ("second", "hi")]

    def test_any_handler_sees_everything(self):
        recorder = EventRecorder()
        recorder.dispatcher.emit(TextDelta("a"))
        recorder.dispatcher.emit(Complete(CompletionReason.DONE))
        assert len(recorder.events) == 2
        assert recorder.completions == [Complete(CompletionReason.DONE)]

    def test_handler_error_is_isolated(self):
        dispatcher = EventDispatcher()
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        dispatcher.on(TextDelta, broken)
        dispatcher.on(TextDelta, seen.append)

        dispatcher.emit(TextDelta("still delivered"))

        assert seen == [TextDelta("still delivered")]


class TestSerialization:
    def test_wire_names(self):
        assert event_to_dict(TextDelta("x")) == {"type": "text_delta", "text": "x"}
        assert event_to_dict(ToolEnded("browser_click", "ok")) == {
            "type": "tool_end",
            "name": "browser_click",
            "result": "ok",
        }

    def test_reason_serialized_as_string(self):
        data = event_to_dict(Complete(CompletionReason.MAX_STEPS, "Stopped", 50))
        assert data == {"type": "complete", "reason": "max_steps", "final_text": "Stopped", "steps": 50}
        assert type(data["reason"]) is str


# ---------------------------------------------------------------------------
# CallbackAdapter
# ---------------------------------------------------------------------------


def _adapter(streaming: bool, has_tool_call=lambda text: "<tool>" in text):
    recorder = EventRecorder()
    return CallbackAdapter(recorder.dispatcher, streaming, has_tool_call), recorder


class TestCallbackAdapter:
    def test_streaming_passes_chunks_through(self):
        adapter, recorder = _adapter(streaming=True)
        adapter.chunk("Hel")
        adapter.chunk("")
        adapter.chunk("lo")
        assert recorder.of_type(TextDelta) == [TextDelta("Hel"), TextDelta("lo")]
        assert adapter.buffered == ""

    def test_non_streaming_buffers_until_output(self):
        adapter, recorder = _adapter(streaming=False)
        adapter.chunk("Hel")
        adapter.chunk("lo")
        assert recorder.events == []
        assert adapter.buffered == "Hello"

        adapter.output("Hello")
        assert recorder.of_type(LlmOutput) == [LlmOutput("Hello")]
        assert adapter.buffered == ""

    def test_trailing_buffer_flushed_on_complete(self):
        adapter, recorder = _adapter(streaming=False)
        adapter.chunk("Final answer")
        adapter.complete(CompletionReason.DONE, "Final answer", 1)
        assert [type(e) for e in recorder.events] == [LlmOutput, Complete]

    @pytest.mark.parametrize("trailing", ["   \n", "<tool>browser_click</tool>"])
    def test_blank_or_tool_markup_not_flushed(self, trailing):
        adapter, recorder = _adapter(streaming=False)
        adapter.chunk(trailing)
        adapter.complete(CompletionReason.DONE)
        assert recorder.of_type(LlmOutput) == []

    def test_complete_fires_once(self):
        adapter, recorder = _adapter(streaming=True)
        adapter.complete(CompletionReason.CANCELLED, "stop", 2)
        adapter.complete(CompletionReason.DONE, "again", 3)
        assert recorder.completions == [Complete(CompletionReason.CANCELLED, "stop", 2)]
        assert adapter.completed

    def test_segments_only_while_streaming(self):
        adapter, recorder = _adapter(streaming=True)
        adapter.segment("   ")
        adapter.segment("Looking at the page.")
        adapter.downgrade()
        adapter.segment("ignored")
        assert recorder.of_type(SegmentComplete) == [SegmentComplete("Looking at the page.")]

    def test_downgrade_drops_partial_text(self):
        adapter, recorder = _adapter(streaming=True)
        adapter.downgrade()
        adapter.chunk("partial")
        adapter.downgrade()
        assert not adapter.streaming
        assert adapter.buffered == ""

    def test_warning(self):
        adapter, recorder = _adapter(streaming=True)
        adapter.warning("retry", "Rate limit error: slow down")
        assert recorder.of_type(ProcessingWarning) == [ProcessingWarning("retry", "Rate limit error: slow down")]
