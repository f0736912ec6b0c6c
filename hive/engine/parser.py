"""Tool-call grammar and incremental transcript parsing.

The model is asked to emit a tool call as three elements, optionally
wrapped in a fenced code block:

    <tool>name</tool>
    <input>arguments</input>
    <requires_approval>true|false</requires_approval>

The same grammar is applied whether the text arrives as one block or as a
stream of deltas. A call is actionable only when all three elements are
present; partial calls are reported as INCOMPLETE together with the
missing element names so the executor can ask the model to repair them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from hive.engine.schemas import ToolCall

# Literal backslash-u escapes for "<" (003c) and ">" (003e)
_ESCAPED_ANGLE = re.compile(r"\\u003([ceCE])")

APPROVAL_GUIDANCE = (
    'Set it to "true" for purchases, data deletion, messages visible to others, '
    'sensitive-data forms, or any risky action. If unsure, set it to "true".'
)


def normalize_markup(text: str) -> str:
    """Decode escaped angle brackets some models emit instead of tags."""
    return _ESCAPED_ANGLE.sub(lambda m: "<" if m.group(1) in "cC" else ">", text)


class ParseStatus(StrEnum):
    NONE = "none"  # no tool-call marker: the model considers the task done
    INCOMPLETE = "incomplete"  # marker present, required element(s) missing
    COMPLETE = "complete"


@dataclass(frozen=True)
class ParseResult:
    status: ParseStatus
    call: ToolCall | None = None
    prose: str = ""  # text before the call (or before the partial call)
    missing: tuple[str, ...] = ()
    name: str = ""
    input: str = ""
    interrupted: bool = False  # output stopped inside the approval element


class ToolCallGrammar:
    """Configurable three-element tool-call grammar.

    Tag names and fence languages are part of the output contract and can
    be changed without touching the executor. With strict=False, a call
    with name and input but no approval element is accepted at end of
    output as requiring approval; it is never silently auto-approved.
    """

    def __init__(
        self,
        name_tag: str = "tool",
        input_tag: str = "input",
        approval_tag: str = "requires_approval",
        fence_languages: tuple[str, ...] = ("xml", "bash"),
        strict: bool = True,
    ) -> None:
        self.name_tag = name_tag
        self.input_tag = input_tag
        self.approval_tag = approval_tag
        self.strict = strict

        n, i, a = re.escape(name_tag), re.escape(input_tag), re.escape(approval_tag)
        langs = "|".join(re.escape(lang) for lang in fence_languages)
        fence = rf"(?P<fence>```(?:{langs})?\s*)?" if langs else r"(?P<fence>```\s*)?"

        self._complete = re.compile(
            rf"{fence}<{n}>(?P<name>.*?)</{n}>\s*"
            rf"<{i}>(?P<input>[\s\S]*?)</{i}>\s*"
            rf"<{a}>(?P<approval>.*?)</{a}>(?:\s*```)?"
        )
        self._name_input = re.compile(
            rf"{fence}<{n}>(?P<name>.*?)</{n}>\s*<{i}>(?P<input>[\s\S]*?)</{i}>"
        )
        self._name = re.compile(rf"{fence}<{n}>(?P<name>.*?)</{n}>")
        self._name_open = re.compile(rf"{fence}<{n}>")
        self._input_approval = re.compile(
            rf"<{i}>(?P<input>[\s\S]*?)</{i}>\s*<{a}>(?P<approval>.*?)</{a}>"
        )
        self._approval_element = re.compile(rf"<{a}>.*?</{a}>")

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match(self, text: str, final: bool = True) -> ParseResult:
        """Classify text as COMPLETE, INCOMPLETE or NONE.

        final=False is used while a stream is still open: only a complete
        call counts, since missing elements may still arrive.
        """
        text = normalize_markup(text)

        m = self._complete.search(text)
        if m:
            return ParseResult(
                status=ParseStatus.COMPLETE,
                call=ToolCall(
                    name=m.group("name").strip(),
                    input=m.group("input").strip(),
                    requires_approval=_parse_flag(m.group("approval")),
                ),
                prose=text[: m.start()],
                name=m.group("name").strip(),
                input=m.group("input").strip(),
            )
        if not final:
            return ParseResult(status=ParseStatus.NONE)

        m = self._name_input.search(text)
        if m:
            name, tool_input = m.group("name").strip(), m.group("input").strip()
            if not self.strict:
                return ParseResult(
                    status=ParseStatus.COMPLETE,
                    call=ToolCall(name=name, input=tool_input, requires_approval=True),
                    prose=text[: m.start()],
                    name=name,
                    input=tool_input,
                )
            return ParseResult(
                status=ParseStatus.INCOMPLETE,
                prose=text[: m.start()],
                missing=(self.approval_tag,),
                name=name,
                input=tool_input,
                interrupted=self._is_interrupted(text[m.end():]),
            )

        m = self._name.search(text)
        if m:
            rest = text[m.end():]
            missing = [self.input_tag]
            if not self._approval_element.search(rest):
                missing.append(self.approval_tag)
            return ParseResult(
                status=ParseStatus.INCOMPLETE,
                prose=text[: m.start()],
                missing=tuple(missing),
                name=m.group("name").strip(),
            )

        m = self._name_open.search(text)
        if m:
            return ParseResult(
                status=ParseStatus.INCOMPLETE,
                prose=text[: m.start()],
                missing=(self.name_tag, self.input_tag, self.approval_tag),
                interrupted=True,
            )

        m = self._input_approval.search(text)
        if m:
            return ParseResult(
                status=ParseStatus.INCOMPLETE,
                prose=text[: m.start()],
                missing=(self.name_tag,),
                input=m.group("input").strip(),
            )

        return ParseResult(status=ParseStatus.NONE)

    def has_call_markup(self, text: str) -> bool:
        """True if text contains at least a name and input element."""
        return bool(self._name_input.search(normalize_markup(text)))

    def _is_interrupted(self, rest: str) -> bool:
        """Output ended partway through the approval element."""
        stripped = rest.strip()
        if not stripped:
            return False
        opener = f"<{self.approval_tag}>"
        if opener.startswith(stripped):
            return True
        return stripped.startswith(opener) and f"</{self.approval_tag}>" not in stripped

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def template(self, name: str = "tool_name", tool_input: str = "arguments here") -> str:
        return (
            f"<{self.name_tag}>{name}</{self.name_tag}>\n"
            f"<{self.input_tag}>{tool_input}</{self.input_tag}>\n"
            f"<{self.approval_tag}>true or false</{self.approval_tag}>"
        )

    def contract(self) -> str:
        """Output-contract section for the system prompt."""
        return (
            "You **must** reply in this XML form:\n\n"
            f"{self.template()}\n\n"
            f"Set **{self.approval_tag} = true** for purchases, data deletion,\n"
            "messages visible to others, sensitive-data forms, or any risky action.\n"
            "If unsure, choose **true**."
        )

    def repair_prompt(self, result: ParseResult) -> str:
        """Corrective user message naming exactly which elements are missing."""
        name = result.name or "tool_name"
        tool_input = result.input or "arguments here"
        if result.interrupted:
            head = "Error: Your tool call was interrupted."
        else:
            provided = []
            if result.name:
                provided.append(f"<{self.name_tag}>{result.name}</{self.name_tag}>")
            if result.input:
                provided.append(f"<{self.input_tag}>{result.input}</{self.input_tag}>")
            missing = " and ".join(f"<{tag}>" for tag in result.missing)
            noun = "tag" if len(result.missing) == 1 else "tags"
            if provided:
                head = (
                    f"Error: Incomplete tool call. You provided {' and '.join(provided)} "
                    f"but are missing the {missing} {noun}."
                )
            else:
                head = f"Error: Incomplete tool call. You are missing the {missing} {noun}."
        return (
            f"{head} Please provide the complete tool call with all three required tags:\n\n"
            f"{self.template(name, tool_input)}\n\n"
            f"The <{self.approval_tag}> tag is mandatory. {APPROVAL_GUIDANCE}"
        )


def _parse_flag(raw: str) -> bool:
    """Approval flag; anything other than an explicit false requires approval."""
    return raw.strip().lower() != "false"


class TranscriptParser:
    """Accumulates model output and detects the first complete tool call.

    feed() is called once per text delta (or once with the whole text in
    non-streaming mode). It returns the ParseResult the first time a
    complete call is present and None otherwise; after detection further
    deltas are ignored. finish() classifies the accumulated text.
    """

    def __init__(self, grammar: ToolCallGrammar | None = None) -> None:
        self._grammar = grammar or ToolCallGrammar()
        self._parts: list[str] = []
        self._detected: ParseResult | None = None

    @property
    def text(self) -> str:
        return normalize_markup("".join(self._parts))

    @property
    def detected(self) -> ParseResult | None:
        return self._detected

    def feed(self, delta: str) -> ParseResult | None:
        if self._detected is not None or not delta:
            return None
        self._parts.append(delta)
        result = self._grammar.match("".join(self._parts), final=False)
        if result.status is ParseStatus.COMPLETE:
            self._detected = result
            return result
        return None

    def finish(self) -> ParseResult:
        if self._detected is not None:
            return self._detected
        return self._grammar.match("".join(self._parts), final=True)

    @classmethod
    def parse(cls, text: str, grammar: ToolCallGrammar | None = None) -> ParseResult:
        parser = cls(grammar)
        parser.feed(text)
        return parser.finish()
