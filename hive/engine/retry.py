"""Provider error classification, backoff and retry/fallback policy.

Rate-limit and overload failures are retried with exponential backoff
plus up to 25% jitter. A failure while streaming first triggers a one-time
downgrade: the same call is replayed in non-streaming mode with no delay,
and only failures after that count against the retry ceiling.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TypeVar

import httpx

from hive.providers.base import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_ATTEMPTS = 5

_RATE_LIMIT_TYPES = frozenset({"rate_limit_error"})
_OVERLOADED_TYPES = frozenset({"overloaded_error"})


class ErrorKind(StrEnum):
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    OTHER = "other"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.OTHER

    @property
    def label(self) -> str:
        """Human-readable name used in retry notices."""
        return {
            ErrorKind.RATE_LIMITED: "rate limit",
            ErrorKind.OVERLOADED: "server overload",
        }.get(self, "provider")


class RetriesExhausted(Exception):
    """Retryable failures continued past the retry ceiling."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Maximum retry attempts ({attempts}) exceeded: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class FatalProviderError(Exception):
    """A non-retryable provider failure. Terminates the run."""

    def __init__(self, error: BaseException) -> None:
        super().__init__(str(error))
        self.error = error


class Cancelled(Exception):
    """Cancellation observed while waiting inside the retry loop."""


def classify(error: BaseException) -> ErrorKind:
    """Map a provider failure to rate_limited | overloaded | other."""
    if isinstance(error, ProviderError):
        if error.error_type in _RATE_LIMIT_TYPES or error.status_code == 429:
            return ErrorKind.RATE_LIMITED
        if error.error_type in _OVERLOADED_TYPES or error.status_code == 529:
            return ErrorKind.OVERLOADED
        return ErrorKind.OTHER
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return ErrorKind.RATE_LIMITED
        if status == 529:
            return ErrorKind.OVERLOADED
    return ErrorKind.OTHER


def format_error_message(error: BaseException) -> str:
    kind = classify(error)
    message = getattr(error, "message", None) or str(error)
    if kind is ErrorKind.RATE_LIMITED:
        return f"Rate limit error: {message}"
    if kind is ErrorKind.OVERLOADED:
        return f"Anthropic servers overloaded: {message}. Retrying..."
    return f"Error: {message}"


class RetryController:
    """Drives one provider call through fallback and retry-with-backoff.

    sleep is injectable so tests can record delays instead of waiting.
    """

    def __init__(
        self,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        rate_limit_base: float = 1.0,
        overloaded_base: float = 2.0,
        max_exponent: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.max_attempts = max_attempts
        self._bases = {
            ErrorKind.RATE_LIMITED: rate_limit_base,
            ErrorKind.OVERLOADED: overloaded_base,
            ErrorKind.OTHER: rate_limit_base,
        }
        self._max_exponent = max_exponent
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_settings(cls, settings, **kwargs) -> RetryController:
        return cls(
            max_attempts=settings.max_retry_attempts,
            rate_limit_base=settings.rate_limit_backoff,
            overloaded_base=settings.overloaded_backoff,
            max_exponent=settings.max_backoff_exponent,
            **kwargs,
        )

    def backoff(self, kind: ErrorKind, attempt: int) -> float:
        """Seconds to wait before retry number attempt (0-based)."""
        exponential = (2 ** min(attempt, self._max_exponent)) * self._bases[kind]
        return exponential + self._rng() * 0.25 * exponential

    async def run(
        self,
        operation: Callable[[bool], Awaitable[T]],
        streaming: bool,
        *,
        is_cancelled: Callable[[], bool] = lambda: False,
        on_fallback: Callable[[BaseException], None] | None = None,
        on_retry: Callable[[BaseException, ErrorKind, int, float], None] | None = None,
    ) -> tuple[T, bool]:
        """Run operation(streaming) until it succeeds.

        Returns (result, streaming) where streaming reports the mode the
        successful call used, so the caller can stay downgraded.
        Raises RetriesExhausted, FatalProviderError or Cancelled.
        """
        attempt = 0
        while True:
            if is_cancelled():
                raise Cancelled()
            try:
                return await operation(streaming), streaming
            except (asyncio.CancelledError, Cancelled):
                raise
            except Exception as e:
                if streaming:
                    logger.warning("Streaming call failed, falling back to non-streaming: %s", e)
                    streaming = False
                    if on_fallback:
                        on_fallback(e)
                    continue

                kind = classify(e)
                if not kind.retryable:
                    logger.error("Provider call failed: %s", e)
                    raise FatalProviderError(e) from e
                if attempt >= self.max_attempts:
                    logger.error("Giving up after %d retry attempts: %s", attempt, e)
                    raise RetriesExhausted(self.max_attempts, e) from e

                delay = self.backoff(kind, attempt)
                logger.warning(
                    "%s error, retry %d/%d in %.2fs: %s",
                    kind.label.capitalize(),
                    attempt + 1,
                    self.max_attempts,
                    delay,
                    e,
                )
                if on_retry:
                    on_retry(e, kind, attempt, delay)
                await self._sleep(delay)
                attempt += 1
