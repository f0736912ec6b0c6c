"""Injects prior successful tool patterns for a domain into the transcript."""

from __future__ import annotations

import json
import logging

from hive.engine.schemas import Message
from hive.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

MEMORY_TOOL = "lookup_memories"


class MemoryManager:
    """Looks up memories through the lookup_memories tool, if registered.

    Storage of memories is owned by the tool; this class only formats what
    it returns. Lookup failures are logged and never interrupt a run.
    """

    def __init__(self, registry: ToolRegistry, tool_name: str = MEMORY_TOOL) -> None:
        self._registry = registry
        self._tool_name = tool_name

    @property
    def available(self) -> bool:
        return self._tool_name in self._registry

    async def lookup(self, domain: str, messages: list[Message]) -> bool:
        """Append a memory message to messages. Returns True if one was added."""
        if not self.available:
            return False

        result = await self._registry.execute(self._tool_name, domain)
        if not result or result.startswith(("No memories found", "Error")):
            return False

        try:
            memories = json.loads(result)
        except json.JSONDecodeError as e:
            logger.warning("Error parsing memory results: %s", e)
            return False
        if not isinstance(memories, list) or not memories:
            return False

        patterns = "\n\n".join(
            f"Task: {m.get('taskDescription', '')}\n"
            f"Steps: {' → '.join(str(s) for s in m.get('toolSequence', []))}"
            for m in memories
            if isinstance(m, dict)
        )
        messages.append(
            Message.user(
                "Before we start, here are some patterns that worked well for tasks on this "
                f"website before:\n\nI found {len(memories)} memories for {domain}. "
                f"Here are patterns that worked before:\n\n{patterns}\n\n"
                "You can adapt these patterns to the current task if relevant."
            )
        )
        logger.info("Injected %d memories for %s", len(memories), domain)
        return True
