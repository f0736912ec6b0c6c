"""System prompt assembly."""

from __future__ import annotations

from hive.engine.parser import ToolCallGrammar
from hive.tools.registry import ToolRegistry

_RULE = "─" * 40

_PREAMBLE = "You are a browser-automation assistant called **Hive**."

_WORKFLOW = """## CANONICAL SEQUENCE
Run **every task in this exact order**:

1. **Identify domain**
   • If there is no current URL, navigate first.
   • Extract the bare domain (e.g. *www.google.com*).

2. **lookup_memories** (when available)
   • Call it with that domain and read the returned memory before doing anything else.
   • If the memory lists tools, replay them unless obviously wrong for the current request.

3. **Observe**: verify the page state with an observation tool before acting.

4. **Analyze → Act**: plan the remainder of the task and execute further tools.

### VERIFICATION NOTES
• Describe exactly what you see, never assume.
• If an expected element is missing, state that."""

_CLOSING = (
    "Always wait for each tool result before the next step.\n"
    "Think step-by-step and finish with a concise summary."
)


class PromptManager:
    """Builds the system prompt from the registered tools and page context."""

    def __init__(self, registry: ToolRegistry, grammar: ToolCallGrammar | None = None) -> None:
        self._registry = registry
        self._grammar = grammar or ToolCallGrammar()
        self._page_context = ""

    @property
    def grammar(self) -> ToolCallGrammar:
        return self._grammar

    def set_page_context(self, url: str, title: str) -> None:
        self._page_context = (
            f"You are currently on {url} ({title}).\n\n"
            "If the user's request seems to continue a previous task, interpret it in the "
            "context of what you've just been doing. If it starts a new task that requires a "
            "different website, navigate there.\n\n"
            "Remember the verification-first workflow: navigate → observe → analyze → act"
        )

    def clear_page_context(self) -> None:
        self._page_context = ""

    def system_prompt(self) -> str:
        tool_descriptions = "\n\n".join(
            f"{tool['name']}: {tool['description']}" for tool in self._registry.manifest()
        )
        sections = [_PREAMBLE, f"You have access to these tools:\n\n{tool_descriptions}"]
        if self._page_context:
            sections.append(f"## CURRENT PAGE CONTEXT\n{self._page_context}")
        sections += [
            _RULE,
            _WORKFLOW,
            _RULE,
            f"## TOOL-CALL SYNTAX\n{self._grammar.contract()}",
            _RULE,
            _CLOSING,
        ]
        return "\n\n".join(sections)
