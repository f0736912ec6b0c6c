"""Anthropic Messages API provider over direct httpx calls.

Tools are described to the model in the system prompt and invoked through
the text grammar, so no API-level tool definitions are sent.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from hive.config import Settings
from hive.engine.schemas import Message, StreamEvent, StreamText, StreamUsage
from hive.providers.base import ProviderError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

# User messages with this prefix are host instructions, never sent
_SYSTEM_INSTRUCTION_PREFIX = "[SYSTEM INSTRUCTION:"

_EPHEMERAL = {"type": "ephemeral"}


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict into a StreamEvent.

    Skips ping keepalives and block/message stop markers. Raises
    ProviderError on in-stream error events (HTTP 200 but error in body).
    A text block after the first is preceded by a newline so separate
    blocks do not run together.
    """
    event_type = data.get("type")

    if event_type == "error":
        raise ProviderError.from_body(data)

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage", {}) or {}
        return StreamUsage(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            cache_write_tokens=usage.get("cache_creation_input_tokens") or None,
            cache_read_tokens=usage.get("cache_read_input_tokens") or None,
        )

    if event_type == "message_delta":
        usage = data.get("usage", {}) or {}
        return StreamUsage(output_tokens=usage.get("output_tokens") or 0)

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        if block.get("type") != "text":
            return None
        prefix = "\n" if data.get("index", 0) > 0 else ""
        text = prefix + block.get("text", "")
        return StreamText(text) if text else None

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        if delta.get("type") == "text_delta":
            return StreamText(delta.get("text", ""))
        return None

    return None


def _with_cache_control(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Mark the last block of a message's content as an ephemeral cache point."""
    if isinstance(content, str):
        return [{"type": "text", "text": content, "cache_control": _EPHEMERAL}]
    blocks = [dict(block) for block in content]
    if blocks:
        blocks[-1]["cache_control"] = _EPHEMERAL
    return blocks


def build_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert a transcript to API messages.

    Host instruction messages are dropped, then the last two user messages
    are marked as cache points.
    """
    kept = [
        m.to_dict()
        for m in messages
        if not (m.role == "user" and isinstance(m.content, str) and m.content.startswith(_SYSTEM_INSTRUCTION_PREFIX))
    ]
    user_indices = [i for i, m in enumerate(kept) if m["role"] == "user"]
    for i in user_indices[-2:]:
        kept[i] = {**kept[i], "content": _with_cache_control(kept[i]["content"])}
    return kept


def _error_from_response(status_code: int, body: bytes) -> ProviderError:
    try:
        return ProviderError.from_body(json.loads(body), status_code=status_code)
    except (json.JSONDecodeError, UnicodeDecodeError, AttributeError):
        return ProviderError(
            "http_error",
            f"HTTP {status_code}: {body[:500].decode(errors='replace')}",
            status_code=status_code,
        )


class AnthropicProvider:
    """Provider backed by the Anthropic Messages API.

    start() must be called before create_message(); close() releases the
    connection pool.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # OAT tokens (sk-ant-oat*) need Bearer auth plus beta headers;
        # regular API keys use x-api-key.
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
            if "sk-ant-oat" in auth_token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        auth_type = "Bearer token" if (auth_token or "sk-ant-oat" in api_key) else "API key"
        logger.info("httpx client initialized (auth: %s, model: %s)", auth_type, settings.model)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(self, system_prompt: str, messages: Sequence[Message], stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "temperature": 0,
            "system": [{"type": "text", "text": system_prompt, "cache_control": _EPHEMERAL}],
            "messages": build_messages(messages),
        }
        if stream:
            payload["stream"] = True
        return payload

    async def create_message(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] = (),
        *,
        stream: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(system_prompt, messages, stream)

        if not stream:
            response = await self._http.post("/v1/messages", json=payload)
            if response.status_code != 200:
                raise _error_from_response(response.status_code, response.content)
            data = response.json()
            usage = data.get("usage", {}) or {}
            yield StreamUsage(
                input_tokens=usage.get("input_tokens") or 0,
                output_tokens=usage.get("output_tokens") or 0,
                cache_write_tokens=usage.get("cache_creation_input_tokens") or None,
                cache_read_tokens=usage.get("cache_read_input_tokens") or None,
            )
            text = "\n".join(b.get("text", "") for b in data.get("content", []) if b.get("type") == "text")
            yield StreamText(text)
            return

        async with self._http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                raise _error_from_response(response.status_code, await response.aread())

            # Only data: lines carry payloads; event: lines are redundant
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                event = _parse_sse_event(json.loads(line[6:]))
                if event is not None:
                    yield event
