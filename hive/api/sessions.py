"""Per-session orchestration around the executor.

Each session owns its stored history, usage tracker, page context and
executor (and with it a cancellation token). The approval gate is shared;
its notifier routes each request to the live stream of the session that
raised it, and fails when there is none so the request is rejected.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlparse

from hive.config import Settings
from hive.engine.approval import ApprovalDeliveryError, ApprovalGate, ApprovalRequest
from hive.engine.executor import AgenticExecutor
from hive.engine.history import HistoryManager
from hive.engine.memory import MemoryManager
from hive.engine.parser import ToolCallGrammar
from hive.engine.prompts import PromptManager
from hive.engine.schemas import Message, RunResult
from hive.engine.usage import UsageTracker
from hive.events import EventDispatcher
from hive.providers.base import Provider
from hive.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

ApprovalSink = Callable[[ApprovalRequest], None]


class SessionBusy(Exception):
    """A run is already in progress for the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} already has a run in progress")
        self.session_id = session_id


@dataclass
class Session:
    id: str
    executor: AgenticExecutor
    prompts: PromptManager
    usage: UsageTracker
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    approval_sink: ApprovalSink | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def busy(self) -> bool:
        return self.lock.locked()


class SessionManager:
    """Owns sessions with LRU eviction at settings.max_sessions."""

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        settings: Settings,
        approvals: ApprovalGate | None = None,
        grammar: ToolCallGrammar | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._settings = settings
        self._grammar = grammar or ToolCallGrammar(strict=settings.strict_tool_calls)
        self._approvals = approvals or ApprovalGate(timeout=settings.approval_timeout)
        self._approvals.set_notifier(self._notify_approval)
        self._memory = MemoryManager(registry)
        self._history = HistoryManager(settings.conversation_token_budget, settings.max_sessions)
        self._sessions: OrderedDict[str, Session] = OrderedDict()

    @property
    def approvals(self) -> ApprovalGate:
        return self._approvals

    @property
    def history(self) -> HistoryManager:
        return self._history

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        """Get existing or create new session with LRU eviction."""
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return self._sessions[session_id]

        while len(self._sessions) >= self._settings.max_sessions:
            evicted_id, evicted = self._sessions.popitem(last=False)
            if evicted.busy:
                evicted.executor.cancel()
            self._history.clear(evicted_id)
            logger.info("Evicted session %s", evicted_id)

        prompts = PromptManager(self._registry, self._grammar)
        usage = UsageTracker()
        executor = AgenticExecutor(
            self._provider,
            self._registry,
            prompts,
            self._approvals,
            settings=self._settings,
            usage=usage,
            memory=self._memory,
            session_id=session_id,
        )
        session = Session(id=session_id, executor=executor, prompts=prompts, usage=usage)
        self._sessions[session_id] = session
        logger.info("Created session %s", session_id)
        return session

    async def run_prompt(
        self,
        session_id: str,
        prompt: str,
        dispatcher: EventDispatcher,
        stream: bool = True,
        url: str | None = None,
        title: str | None = None,
        approval_sink: ApprovalSink | None = None,
    ) -> RunResult:
        """Run a prompt against the session's stored history.

        Raises SessionBusy if the session already has a run in progress.
        """
        session = self.get_or_create(session_id)
        if session.busy:
            raise SessionBusy(session_id)

        async with session.lock:
            domain = None
            if url:
                session.prompts.set_page_context(url, title or "")
                domain = urlparse(url).hostname

            self._history.add_prompt(session_id, prompt)
            initial = self._history.messages(session_id)

            session.approval_sink = approval_sink
            try:
                result = await session.executor.run(
                    prompt,
                    dispatcher,
                    initial_messages=initial,
                    streaming_requested=stream,
                    domain=domain,
                )
            finally:
                session.approval_sink = None

            for text in result.outputs:
                self._history.append(session_id, Message.assistant(text))
            logger.info(
                "Session %s run finished: %s in %d steps", session_id, result.reason, result.steps
            )
            return result

    def cancel(self, session_id: str) -> bool:
        """Request cancellation of the session's current run."""
        session = self._sessions.get(session_id)
        if session is None or not session.busy:
            return False
        session.executor.cancel()
        return True

    def clear(self, session_id: str) -> bool:
        """Clear stored history and page context. Returns False if unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._history.clear(session_id)
        session.prompts.clear_page_context()
        return True

    def usage(self, session_id: str) -> dict[str, int] | None:
        session = self._sessions.get(session_id)
        return session.usage.snapshot() if session else None

    def _notify_approval(self, request: ApprovalRequest) -> None:
        session = self._sessions.get(request.session_id or "")
        if session is None or session.approval_sink is None:
            raise ApprovalDeliveryError(f"No live stream for session {request.session_id}")
        session.approval_sink(request)
