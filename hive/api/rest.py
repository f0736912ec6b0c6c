"""REST API for the Hive agent.

Endpoints:
  POST   /sessions/{session_id}/prompt  - Run a prompt, SSE stream of execution events
  POST   /sessions/{session_id}/cancel  - Cancel the session's current run
  DELETE /sessions/{session_id}         - Clear the session's history
  GET    /sessions/{session_id}/usage   - Token usage for the session
  POST   /approvals/{request_id}        - Approve or reject a pending tool call
  GET    /health                        - Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from hive.api.sessions import SessionBusy, SessionManager
from hive.engine.approval import ApprovalRequest
from hive.events import EventDispatcher, event_to_dict

logger = logging.getLogger(__name__)


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def create_app(sessions: SessionManager, lifespan: Any | None = None) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def prompt(request: Request) -> StreamingResponse | JSONResponse:
        """POST /sessions/{session_id}/prompt - SSE execution stream."""
        session_id = request.path_params["session_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        text = body.get("prompt") if isinstance(body, dict) else None
        if not text or not isinstance(text, str):
            return JSONResponse({"error": "Missing required field: prompt"}, status_code=400)

        session = sessions.get(session_id)
        if session is not None and session.busy:
            return JSONResponse({"error": f"Session {session_id} is busy"}, status_code=409)

        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        dispatcher = EventDispatcher()
        dispatcher.on_any(lambda event: queue.put_nowait(event_to_dict(event)))

        def approval_sink(approval: ApprovalRequest) -> None:
            queue.put_nowait({"type": "approval_required", **approval.to_dict()})

        task = asyncio.create_task(
            sessions.run_prompt(
                session_id,
                text,
                dispatcher,
                stream=bool(body.get("stream", True)),
                url=body.get("url"),
                title=body.get("title"),
                approval_sink=approval_sink,
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))

        async def event_generator():
            try:
                while (item := await queue.get()) is not None:
                    yield _sse(item)
                if not task.cancelled() and task.exception() is not None:
                    error = task.exception()
                    if isinstance(error, SessionBusy):
                        logger.warning("%s", error)
                    else:
                        logger.error("Run error for session %s: %s", session_id, error)
                    yield _sse({"type": "error", "text": str(error)})
            finally:
                # Client went away mid-run: stop at the next safe checkpoint
                if not task.done():
                    sessions.cancel(session_id)
                    await asyncio.gather(task, return_exceptions=True)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def cancel(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/cancel - Cancel the current run."""
        session_id = request.path_params["session_id"]
        if not sessions.cancel(session_id):
            return JSONResponse({"error": f"No run in progress for {session_id}"}, status_code=404)
        return JSONResponse({"status": "cancelling", "session_id": session_id})

    async def clear(request: Request) -> JSONResponse:
        """DELETE /sessions/{session_id} - Clear conversation history."""
        session_id = request.path_params["session_id"]
        if not sessions.clear(session_id):
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        return JSONResponse({"status": "cleared", "session_id": session_id})

    async def usage(request: Request) -> JSONResponse:
        """GET /sessions/{session_id}/usage - Token usage."""
        session_id = request.path_params["session_id"]
        snapshot = sessions.usage(session_id)
        if snapshot is None:
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        return JSONResponse({"session_id": session_id, "usage": snapshot})

    async def approve(request: Request) -> JSONResponse:
        """POST /approvals/{request_id} - Deliver an approval decision."""
        request_id = request.path_params["request_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        approved = body.get("approved") if isinstance(body, dict) else None
        if not isinstance(approved, bool):
            return JSONResponse({"error": "Field 'approved' must be a boolean"}, status_code=400)

        if not sessions.approvals.resolve(request_id, approved):
            return JSONResponse({"error": f"No pending approval: {request_id}"}, status_code=404)
        return JSONResponse({"status": "approved" if approved else "rejected", "request_id": request_id})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse(
            {
                "status": "healthy",
                "sessions": len(sessions),
                "pending_approvals": len(sessions.approvals.pending),
                "tools": sessions.registry.names(),
            }
        )

    routes = [
        Route("/sessions/{session_id}/prompt", prompt, methods=["POST"]),
        Route("/sessions/{session_id}/cancel", cancel, methods=["POST"]),
        Route("/sessions/{session_id}/usage", usage),
        Route("/sessions/{session_id}", clear, methods=["DELETE"]),
        Route("/approvals/{request_id}", approve, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
