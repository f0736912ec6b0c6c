"""Agentic executor: the tool-calling step loop.

Each step calls the model, parses its output for a single tool call,
runs the tool (through the approval gate when the call asks for it) and
folds the result back into the transcript. The loop ends when the model
answers without a tool call, on cancellation, at the step ceiling, or on
a provider failure that retries cannot absorb. Every run emits exactly
one Complete event.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Sequence
from typing import Any

from hive.config import Settings
from hive.engine.approval import ApprovalGate
from hive.engine.callbacks import CallbackAdapter
from hive.engine.history import MAX_CONTEXT_TOKENS, trim_history
from hive.engine.memory import MemoryManager
from hive.engine.parser import ParseResult, ParseStatus, TranscriptParser
from hive.engine.prompts import PromptManager
from hive.engine.retry import (
    Cancelled,
    ErrorKind,
    FatalProviderError,
    RetriesExhausted,
    RetryController,
    format_error_message,
)
from hive.engine.schemas import Message, RunResult, StreamUsage, ToolCall
from hive.engine.usage import UsageTracker
from hive.events import CompletionReason, EventDispatcher
from hive.providers.base import Provider
from hive.tools.registry import ApprovalContext, ToolRegistry

logger = logging.getLogger(__name__)

MAX_STEPS = 50

APPROVAL_REASON = "The AI assistant has determined this action requires your approval."
REJECTED_RESULT = "Action cancelled by user."
APPROVAL_ERROR_RESULT = "Error in approval process. Action cancelled."
CANCELLED_MESSAGE = "\n\nExecution cancelled by user."


class CancellationToken:
    """Cooperative cancellation flag polled at step boundaries and waits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def event(self) -> asyncio.Event:
        return self._event

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    async def sleep(self, delay: float) -> None:
        """Sleep for delay seconds, returning early if cancelled."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=delay)


def seed_messages(prompt: str, initial_messages: Sequence[Message | dict[str, Any]] | None) -> list[Message]:
    """Working transcript for a run: prior messages plus the prompt."""
    messages = [m if isinstance(m, Message) else Message.from_dict(m) for m in initial_messages or ()]
    if not messages:
        return [Message.user(prompt)]
    last = messages[-1]
    if last.role != "user" or last.content != prompt:
        messages.append(Message.user(prompt))
    return messages


def format_tool_result(result: str, prompt: str) -> str:
    """Normalize a tool result into the user message fed back to the model."""
    try:
        parsed = json.loads(result)
    except (json.JSONDecodeError, TypeError):
        return f"Tool result: {result}"

    if isinstance(parsed, dict) and parsed.get("type") == "screenshotRef" and parsed.get("id"):
        return (
            f"Tool result: Screenshot captured ({parsed['id']}). {parsed.get('note') or ''} "
            f'Based on this image, please answer the user\'s original question: "{prompt}". '
            "Don't just describe the image - focus on answering the specific question or "
            "completing the task the user asked for."
        )
    return f"Tool result: {json.dumps(parsed, indent=2)}"


class AgenticExecutor:
    """Runs the step loop for one session.

    Collaborators are injected so each session owns its own usage tracker
    and cancellation token; nothing here is process-wide except the
    approval gate, whose ids are unique.
    """

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        prompts: PromptManager | None = None,
        approvals: ApprovalGate | None = None,
        *,
        settings: Settings | None = None,
        usage: UsageTracker | None = None,
        memory: MemoryManager | None = None,
        retry: RetryController | None = None,
        cancel_token: CancellationToken | None = None,
        session_id: str | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._prompts = prompts or PromptManager(registry)
        self._approvals = approvals or ApprovalGate()
        self._usage = usage or UsageTracker()
        self._memory = memory
        self._cancel = cancel_token or CancellationToken()
        self._session_id = session_id

        if settings is not None:
            self._max_steps = settings.max_steps
            self._context_budget = settings.context_token_budget
            self._streaming_enabled = settings.streaming_enabled
            self._retry = retry or RetryController.from_settings(settings, sleep=self._cancel.sleep)
        else:
            self._max_steps = MAX_STEPS
            self._context_budget = MAX_CONTEXT_TOKENS
            self._streaming_enabled = True
            self._retry = retry or RetryController(sleep=self._cancel.sleep)

    @property
    def usage(self) -> UsageTracker:
        return self._usage

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel

    @property
    def max_steps(self) -> int:
        return self._max_steps

    def cancel(self) -> None:
        logger.info("Cancellation requested for session %s", self._session_id)
        self._cancel.cancel()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        prompt: str,
        dispatcher: EventDispatcher,
        initial_messages: Sequence[Message | dict[str, Any]] | None = None,
        streaming_requested: bool = True,
        domain: str | None = None,
    ) -> RunResult:
        """Execute a prompt until the model finishes or the run is stopped."""
        self._cancel.reset()
        grammar = self._prompts.grammar
        adapter = CallbackAdapter(
            dispatcher,
            streaming=streaming_requested and self._streaming_enabled,
            has_tool_call=grammar.has_call_markup,
        )
        result = RunResult(reason=CompletionReason.DONE, final_text="", steps=0)

        messages = seed_messages(prompt, initial_messages)
        if domain and self._memory is not None:
            await self._memory.lookup(domain, messages)
        messages = trim_history(messages, self._context_budget)

        try:
            result.reason = await self._loop(prompt, messages, adapter, result)
        except Cancelled:
            result.reason = CompletionReason.CANCELLED
        except RetriesExhausted as e:
            result.reason = CompletionReason.RETRIES_EXHAUSTED
            result.final_text = f"Maximum retry attempts ({e.attempts}) exceeded. Please try again later."
        except FatalProviderError as e:
            result.reason = CompletionReason.FATAL
            result.final_text = f"Fatal error: {e}"
        except asyncio.CancelledError:
            adapter.discard()
            adapter.output(CANCELLED_MESSAGE)
            result.outputs.append(CANCELLED_MESSAGE)
            adapter.complete(CompletionReason.CANCELLED, CANCELLED_MESSAGE, result.steps)
            raise
        except Exception as e:
            logger.exception("Unexpected error in step loop")
            result.reason = CompletionReason.FATAL
            result.final_text = f"Fatal error: {e}"

        if result.reason is CompletionReason.CANCELLED:
            adapter.discard()
            result.final_text = CANCELLED_MESSAGE
        elif result.reason is CompletionReason.MAX_STEPS:
            result.final_text = f"Stopped: exceeded maximum of {self._max_steps} steps."

        if result.reason is not CompletionReason.DONE:
            logger.info("Run ended (%s) after %d steps", result.reason, result.steps)
            adapter.output(result.final_text)
            result.outputs.append(result.final_text)

        result.messages = messages
        adapter.complete(result.reason, result.final_text, result.steps)
        return result

    async def _loop(
        self,
        prompt: str,
        messages: list[Message],
        adapter: CallbackAdapter,
        result: RunResult,
    ) -> CompletionReason:
        while True:
            if self._cancel.cancelled:
                return CompletionReason.CANCELLED
            if result.steps >= self._max_steps:
                return CompletionReason.MAX_STEPS
            result.steps += 1

            parser = await self._model_turn(messages, adapter)
            if self._cancel.cancelled:
                return CompletionReason.CANCELLED

            text = parser.text
            parsed = parser.finish()
            if parsed.status is ParseStatus.COMPLETE:
                adapter.segment(parsed.prose)
                adapter.tool_started(parsed.call.name, parsed.call.input)
            adapter.output(text)
            result.outputs.append(text)

            if parsed.status is ParseStatus.NONE:
                adapter.segment(text)
                result.final_text = text
                return CompletionReason.DONE

            if parsed.status is ParseStatus.INCOMPLETE:
                self._request_repair(parsed, text, messages, adapter)
                continue

            call = parsed.call
            if self._registry.get(call.name) is None:
                logger.warning("Model requested unknown tool %r", call.name)
                error = self._registry.unknown_tool_message(call.name)
                adapter.tool_ended(call.name, error)
                messages += [Message.assistant(text), Message.user(error)]
                messages[:] = trim_history(messages, self._context_budget)
                continue

            if self._cancel.cancelled:
                return CompletionReason.CANCELLED

            tool_result = await self._execute(call, adapter)
            if tool_result is None:
                return CompletionReason.CANCELLED
            result.tool_calls.append(call)
            adapter.tool_ended(call.name, tool_result)

            if self._cancel.cancelled:
                return CompletionReason.CANCELLED

            messages += [Message.assistant(text), Message.user(format_tool_result(tool_result, prompt))]
            messages[:] = trim_history(messages, self._context_budget)

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    async def _model_turn(self, messages: list[Message], adapter: CallbackAdapter) -> TranscriptParser:
        """Call the provider once, through fallback and retry."""
        grammar = self._prompts.grammar
        system_prompt = self._prompts.system_prompt()
        manifest = self._registry.manifest()

        async def attempt(streaming: bool) -> TranscriptParser:
            adapter.discard()
            parser = TranscriptParser(grammar)
            call_usage = self._usage.begin_call()
            stream = self._provider.create_message(system_prompt, list(messages), manifest, stream=streaming)
            async with contextlib.aclosing(stream):
                async for event in stream:
                    if self._cancel.cancelled:
                        break
                    if isinstance(event, StreamUsage):
                        self._usage.record(event, call_usage)
                        continue
                    if parser.feed(event.text) is not None:
                        break
                    adapter.chunk(event.text)
            return parser

        def on_fallback(error: BaseException) -> None:
            adapter.downgrade()
            adapter.warning("fallback", f"Streaming failed, retrying without streaming: {error}")

        def on_retry(error: BaseException, kind: ErrorKind, attempt_no: int, delay: float) -> None:
            adapter.warning("retry", format_error_message(error))
            adapter.notice(
                f"Retrying after {kind.label} error "
                f"(attempt {attempt_no + 1} of {self._retry.max_attempts})..."
            )

        parser, streaming = await self._retry.run(
            attempt,
            adapter.streaming,
            is_cancelled=lambda: self._cancel.cancelled,
            on_fallback=on_fallback,
            on_retry=on_retry,
        )
        if adapter.streaming and not streaming:
            adapter.downgrade()
        return parser

    # ------------------------------------------------------------------
    # Tool handling
    # ------------------------------------------------------------------

    def _request_repair(
        self,
        parsed: ParseResult,
        text: str,
        messages: list[Message],
        adapter: CallbackAdapter,
    ) -> None:
        grammar = self._prompts.grammar
        noun = "tag" if len(parsed.missing) == 1 else "tags"
        adapter.notice(
            f"Incomplete tool call detected: {parsed.name or 'unknown'} "
            f"(missing {' and '.join(parsed.missing)} {noun})"
        )
        logger.warning("Incomplete tool call %r, missing %s", parsed.name, ", ".join(parsed.missing))
        messages += [Message.assistant(text), Message.user(grammar.repair_prompt(parsed))]
        messages[:] = trim_history(messages, self._context_budget)

    async def _execute(self, call: ToolCall, adapter: CallbackAdapter) -> str | None:
        """Run a tool call. Returns None if the run was cancelled while waiting."""
        adapter.notice(f"tool: {call.name} | args: {call.input}")

        if not call.requires_approval:
            return await self._registry.execute(call.name, call.input)

        adapter.notice(f"This action requires approval: {APPROVAL_REASON}")
        try:
            approved = await self._approvals.request_approval(
                call.name,
                call.input,
                APPROVAL_REASON,
                session_id=self._session_id,
                cancel=self._cancel.event,
            )
        except Exception as e:
            logger.exception("Error in approval process for %s", call.name)
            adapter.notice(f"Error in approval process: {e}")
            return APPROVAL_ERROR_RESULT

        if approved:
            adapter.notice("Action approved by user. Executing...")
            context = ApprovalContext(requires_approval=True, reason=APPROVAL_REASON)
            return await self._registry.execute(call.name, call.input, context)

        if self._cancel.cancelled:
            return None
        adapter.notice("Action rejected by user.")
        return REJECTED_RESULT
