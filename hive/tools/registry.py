"""Tool registry: name lookup, health-checked execution, error containment.

Every tool takes a single string input and returns a string. Errors never
propagate out of execute(): they come back as a result string starting
with "Error" so one bad tool cannot crash the step loop.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Substrings that mark an exception as a lost target session
_CLOSED_MARKERS = ("closed", "detached", "destroyed")
_OBSERVATION_MARKERS = ("screenshot", "read", "title")

HealthCheck = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class ApprovalContext:
    """Passed to a tool that ran after explicit user approval."""

    requires_approval: bool
    reason: str = ""


@dataclass
class Tool:
    name: str
    description: str
    func: Callable[..., Awaitable[Any]]

    @property
    def accepts_context(self) -> bool:
        try:
            params = inspect.signature(self.func).parameters
        except (TypeError, ValueError):
            return False
        return len(params) >= 2 or any(
            p.kind is inspect.Parameter.VAR_POSITIONAL for p in params.values()
        )


class ToolRegistry:
    """Registers tools and executes them by name.

    An optional health_check probes the live target before any tool whose
    name does not start with tab_prefix; tab tools work at browser level
    and stay usable when the page session is gone.
    """

    def __init__(self, health_check: HealthCheck | None = None, tab_prefix: str = "browser_tab_") -> None:
        self._tools: dict[str, Tool] = {}
        self._health_check = health_check
        self._tab_prefix = tab_prefix

    def register(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        description: str = "",
    ) -> Tool:
        """Register (or replace) a tool."""
        tool = Tool(name=name, description=description or (func.__doc__ or "").strip(), func=func)
        self._tools[name] = tool
        logger.debug("Registered tool %s", name)
        return tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def set_health_check(self, health_check: HealthCheck | None) -> None:
        self._health_check = health_check

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def manifest(self) -> list[dict[str, str]]:
        """Name and description of every tool, for prompts and providers."""
        return [{"name": t.name, "description": t.description} for t in self._tools.values()]

    def is_tab_tool(self, name: str) -> bool:
        return name.startswith(self._tab_prefix)

    def unknown_tool_message(self, name: str) -> str:
        return f'Error: tool "{name}" not found. Available: {", ".join(self.names())}'

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def is_healthy(self) -> bool:
        if self._health_check is None:
            return True
        try:
            return bool(await self._health_check())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info("Target health check failed: %s", e)
            return False

    async def execute(self, name: str, tool_input: str, context: ApprovalContext | None = None) -> str:
        """Run a tool and return its result as a string."""
        tool = self._tools.get(name)
        if tool is None:
            return self.unknown_tool_message(name)

        is_tab = self.is_tab_tool(name)
        try:
            if not is_tab and not await self.is_healthy():
                logger.warning("Target unhealthy, refusing to run %s", name)
                return self._unhealthy_guidance(name, tool_input)

            if context is not None and tool.accepts_context:
                result = await tool.func(tool_input, context)
            else:
                result = await tool.func(tool_input)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            if is_tab:
                return (
                    f"Error executing {name}: {e}. Tab tools should still work even with a "
                    f"closed debug session. Try {self._tab_prefix}new to create a fresh tab."
                )
            if any(marker in str(e) for marker in _CLOSED_MARKERS):
                return (
                    "Error: Debug session appears to be closed. Please use tab tools "
                    f"({self._tab_prefix}new, {self._tab_prefix}select, etc.) "
                    "to create and work with a new tab."
                )
            return f"Error executing tool: {e}"

        if isinstance(result, str):
            return result
        return json.dumps(result)

    def _unhealthy_guidance(self, name: str, tool_input: str) -> str:
        new_tab, select_tab = f"{self._tab_prefix}new", f"{self._tab_prefix}select"
        if name.endswith("_navigate"):
            return (
                f"Error: Debug session was closed. Please use {new_tab} instead with the URL "
                f"as input. Example: {new_tab} | {tool_input}"
            )
        if any(marker in name for marker in _OBSERVATION_MARKERS):
            return (
                f"Error: Debug session was closed. Please create a new tab first using "
                f"{new_tab}, then select it with {select_tab}, and try again."
            )
        return (
            f"Error: Debug session was closed. Please use tab tools ({new_tab}, "
            f"{select_tab}, etc.) to create and work with a new tab."
        )
