"""Per-session token accounting.

One UsageTracker is injected per session instead of a process-wide
singleton. Providers report cumulative output counts within a call, so
output tokens are recorded as deltas against the running count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from hive.engine.schemas import StreamUsage

logger = logging.getLogger(__name__)


@dataclass
class CallUsage:
    """Running counts for a single model call."""

    input_tokens: int = 0
    output_tokens: int = 0


class UsageTracker:
    def __init__(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_write_tokens = 0
        self.cache_read_tokens = 0
        self.calls = 0

    def begin_call(self) -> CallUsage:
        self.calls += 1
        return CallUsage()

    def record(self, event: StreamUsage, call: CallUsage) -> None:
        """Fold one usage event from the stream into the totals."""
        logger.debug(
            "Token update: input=%d, output=%d, cacheWrite=%s, cacheRead=%s",
            event.input_tokens,
            event.output_tokens,
            event.cache_write_tokens,
            event.cache_read_tokens,
        )
        if event.input_tokens:
            call.input_tokens = event.input_tokens
            self.input_tokens += event.input_tokens
            self.cache_write_tokens += event.cache_write_tokens or 0
            self.cache_read_tokens += event.cache_read_tokens or 0

        if event.output_tokens > call.output_tokens:
            self.output_tokens += event.output_tokens - call.output_tokens
            call.output_tokens = event.output_tokens

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.cache_write_tokens + self.cache_read_tokens + self.output_tokens

    def snapshot(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_tokens": self.total_tokens,
            "calls": self.calls,
        }

    def reset(self) -> None:
        self.input_tokens = self.output_tokens = 0
        self.cache_write_tokens = self.cache_read_tokens = 0
        self.calls = 0
