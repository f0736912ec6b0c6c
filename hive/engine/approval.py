"""Human-in-the-loop approval gate.

A tool call flagged requires_approval suspends the step until an external
decision arrives for its request id. Anything short of an explicit
approval resolves to reject.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class ApprovalDeliveryError(Exception):
    """The approval request could not be delivered to a decision-maker."""


@dataclass
class ApprovalRequest:
    id: str
    tool_name: str
    tool_input: str
    reason: str
    session_id: str | None = None
    created_at: float = field(default_factory=time.time)
    future: asyncio.Future | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.id,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "reason": self.reason,
            "session_id": self.session_id,
        }


# notify(request) may be sync or async; raising means delivery failed
ApprovalNotifier = Callable[[ApprovalRequest], Awaitable[None] | None]


def _generate_id() -> str:
    return f"approval_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class ApprovalGate:
    """Pending approval table keyed by request id.

    Lookups are idempotent: resolving an unknown or already-resolved id is
    logged and ignored. All access happens on one event loop, so the table
    needs no lock.
    """

    def __init__(self, notifier: ApprovalNotifier | None = None, timeout: float = 0) -> None:
        self._notifier = notifier
        self._timeout = timeout
        self._pending: dict[str, ApprovalRequest] = {}

    def set_notifier(self, notifier: ApprovalNotifier) -> None:
        self._notifier = notifier

    @property
    def pending(self) -> dict[str, ApprovalRequest]:
        return dict(self._pending)

    async def request_approval(
        self,
        tool_name: str,
        tool_input: str,
        reason: str,
        session_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Suspend until the request is approved or rejected.

        Returns False on rejection, delivery failure, cancellation or timeout.
        """
        request = ApprovalRequest(
            id=_generate_id(),
            tool_name=tool_name,
            tool_input=tool_input,
            reason=reason,
            session_id=session_id,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request.id] = request
        logger.info("Approval requested %s for tool %s", request.id, tool_name)

        try:
            await self._deliver(request)
        except Exception:
            logger.exception("Error sending approval request %s", request.id)
            self.fail_delivery(request.id)

        try:
            return await self._wait(request, cancel)
        finally:
            self._pending.pop(request.id, None)

    async def _deliver(self, request: ApprovalRequest) -> None:
        if self._notifier is None:
            raise ApprovalDeliveryError("No approval transport configured")
        result = self._notifier(request)
        if inspect.isawaitable(result):
            await result

    async def _wait(self, request: ApprovalRequest, cancel: asyncio.Event | None) -> bool:
        future = request.future
        waiters: set[asyncio.Future] = {future}
        cancel_task: asyncio.Task | None = None
        if cancel is not None:
            if cancel.is_set():
                return False
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if future in done:
            return bool(future.result())
        if not done:
            logger.warning("Approval %s timed out after %.1fs", request.id, self._timeout)
        else:
            logger.info("Approval %s abandoned: execution cancelled", request.id)
        return False

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Deliver a decision. Returns False if no matching request is pending."""
        request = self._pending.pop(request_id, None)
        if request is None:
            logger.warning("No pending approval found for requestId: %s", request_id)
            return False
        if request.future is not None and not request.future.done():
            request.future.set_result(approved)
        logger.info("Approval %s %s", request_id, "approved" if approved else "rejected")
        return True

    def fail_delivery(self, request_id: str) -> None:
        """The outbound notification failed: resolve as reject."""
        logger.warning("Approval %s could not be delivered, rejecting", request_id)
        self.resolve(request_id, False)
