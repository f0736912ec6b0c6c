"""Token estimation and budgeted history trimming.

Costs use the chars/4 heuristic. Trimming never drops a user message or
the original request; under pressure assistant turns go oldest-first.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from collections.abc import Sequence

from hive.engine.schemas import Message, MessageHistory

logger = logging.getLogger(__name__)

MAX_CONTEXT_TOKENS = 12_000
MAX_CONVERSATION_TOKENS = 100_000


def approx_tokens(text: str) -> int:
    """Very cheap chars/4 token estimate."""
    return math.ceil(len(text) / 4)


def message_tokens(message: Message) -> int:
    return approx_tokens(message.text)


def context_token_count(messages: Sequence[Message]) -> int:
    """Total estimated tokens for a message list."""
    return sum(message_tokens(m) for m in messages)


def trim_history(messages: Sequence[Message], max_tokens: int = MAX_CONTEXT_TOKENS) -> list[Message]:
    """Trim to max_tokens while preserving message 0 and every user message.

    Assistant messages are kept newest-first while they fit in whatever
    budget the kept set leaves over. Returns a new list in original order;
    the input is not modified.
    """
    if context_token_count(messages) <= max_tokens or len(messages) <= 2:
        return list(messages)

    keep: set[int] = {0}
    keep.update(i for i in range(1, len(messages)) if messages[i].role == "user")

    remaining = max_tokens - context_token_count([messages[i] for i in keep])

    for i in range(len(messages) - 1, 0, -1):
        if i in keep or messages[i].role != "assistant":
            continue
        cost = message_tokens(messages[i])
        if cost <= remaining:
            keep.add(i)
            remaining -= cost

    trimmed = [m for i, m in enumerate(messages) if i in keep]
    logger.info(
        "Trimmed history: %d -> %d messages (%d tokens, budget %d)",
        len(messages),
        len(trimmed),
        context_token_count(trimmed),
        max_tokens,
    )
    return trimmed


class HistoryManager:
    """Per-session message histories with budget trimming and LRU eviction.

    One MessageHistory per session id, created lazily at the first prompt.
    The first prompt of a session becomes its original request; every
    later message is appended to conversation_history, which is trimmed
    whenever its estimate exceeds the budget.
    """

    def __init__(self, budget: int = MAX_CONVERSATION_TOKENS, max_sessions: int = 100) -> None:
        self._budget = budget
        self._max_sessions = max_sessions
        self._histories: OrderedDict[str, MessageHistory] = OrderedDict()

    @property
    def budget(self) -> int:
        return self._budget

    def get(self, session_id: str) -> MessageHistory:
        """Get existing or create new history with LRU eviction."""
        if session_id in self._histories:
            self._histories.move_to_end(session_id)
            return self._histories[session_id]

        while len(self._histories) >= self._max_sessions:
            evicted, _ = self._histories.popitem(last=False)
            logger.info("Evicted history for session %s", evicted)

        history = MessageHistory()
        self._histories[session_id] = history
        return history

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._histories

    def __len__(self) -> int:
        return len(self._histories)

    def messages(self, session_id: str) -> list[Message]:
        return self.get(session_id).messages()

    def add_prompt(self, session_id: str, prompt: str) -> None:
        """Record a user prompt; the first one becomes the original request."""
        history = self.get(session_id)
        message = Message.user(prompt)
        if history.original_request is None:
            history.original_request = message
            logger.info("Set original request for session %s", session_id)
        self.append(session_id, message)

    def append(self, session_id: str, message: Message) -> None:
        history = self.get(session_id)
        history.conversation_history = [*history.conversation_history, message]
        tokens = context_token_count(history.conversation_history)
        if tokens > self._budget:
            logger.info(
                "Conversation history for %s exceeds token budget (%d/%d)",
                session_id,
                tokens,
                self._budget,
            )
            history.conversation_history = trim_history(history.conversation_history, self._budget)

    def clear(self, session_id: str | None = None) -> None:
        """Clear one session's history, or all histories when no id is given."""
        if session_id is None:
            self._histories.clear()
            logger.info("All message histories cleared")
            return
        self.get(session_id).clear()
        logger.info("Message history cleared for session %s", session_id)
