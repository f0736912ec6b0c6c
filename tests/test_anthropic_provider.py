"""Tests for the Anthropic provider.

Covers:
- SSE event parsing (_parse_sse_event pure function)
- message conversion (host-instruction filtering, cache points)
- create_message() in streaming and non-streaming mode over httpx.MockTransport
- auth header selection
"""

import json

import httpx
import pytest

from hive.config import Settings
from hive.engine.schemas import Message, StreamText, StreamUsage
from hive.providers.anthropic import AnthropicProvider, _parse_sse_event, build_messages
from hive.providers.base import Provider, ProviderError


def _sse(*events: dict) -> bytes:
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    return ("\n".join(lines) + "\n").encode()


def _text_stream(*chunks: str) -> bytes:
    return _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 321, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "ping"},
        *[
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": c}}
            for c in chunks
        ],
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 12}},
        {"type": "message_stop"},
    )


async def _make_provider(handler, **settings_overrides) -> AnthropicProvider:
    settings = Settings(ANTHROPIC_API_KEY="sk-ant-api-test", **settings_overrides)
    provider = AnthropicProvider(settings, transport=httpx.MockTransport(handler))
    await provider.start()
    return provider


async def _collect(provider, messages=None, stream=True):
    return [
        event
        async for event in provider.create_message(
            "You are Hive.", messages or [Message.user("hi")], stream=stream
        )
    ]


# ---------------------------------------------------------------------------
# _parse_sse_event
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    def test_text_delta(self):
        data = {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}}
        assert _parse_sse_event(data) == StreamText("Hello")

    def test_message_start_usage_with_cache(self):
        data = {
            "type": "message_start",
            "message": {
                "usage": {
                    "input_tokens": 10,
                    "output_tokens": 1,
                    "cache_creation_input_tokens": 500,
                    "cache_read_input_tokens": 0,
                }
            },
        }
        assert _parse_sse_event(data) == StreamUsage(10, 1, 500, None)

    def test_message_delta_usage(self):
        data = {"type": "message_delta", "usage": {"output_tokens": 42}}
        assert _parse_sse_event(data) == StreamUsage(output_tokens=42)

    def test_second_text_block_gets_newline(self):
        data = {"type": "content_block_start", "index": 1, "content_block": {"type": "text", "text": ""}}
        assert _parse_sse_event(data) == StreamText("\n")

    def test_first_empty_block_is_skipped(self):
        data = {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}
        assert _parse_sse_event(data) is None

    @pytest.mark.parametrize("event_type", ["ping", "content_block_stop", "message_stop"])
    def test_markers_skipped(self, event_type):
        assert _parse_sse_event({"type": event_type}) is None

    def test_error_event_raises(self):
        data = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        with pytest.raises(ProviderError) as exc_info:
            _parse_sse_event(data)
        assert exc_info.value.error_type == "overloaded_error"


# ---------------------------------------------------------------------------
# build_messages
# ---------------------------------------------------------------------------


class TestBuildMessages:
    def test_host_instructions_are_dropped(self):
        messages = [
            Message.user("find flights"),
            Message.user("[SYSTEM INSTRUCTION: be brief]"),
            Message.assistant("ok"),
        ]
        built = build_messages(messages)
        assert [m["role"] for m in built] == ["user", "assistant"]

    def test_last_two_user_messages_are_cache_points(self):
        messages = [
            Message.user("one"),
            Message.assistant("a"),
            Message.user("two"),
            Message.assistant("b"),
            Message.user("three"),
        ]
        built = build_messages(messages)
        assert built[0]["content"] == "one"
        assert built[2]["content"] == [{"type": "text", "text": "two", "cache_control": {"type": "ephemeral"}}]
        assert built[4]["content"][0]["cache_control"] == {"type": "ephemeral"}
        assert built[3]["content"] == "b"

    def test_structured_content_marks_last_block(self):
        content = ({"type": "text", "text": "a"}, {"type": "text", "text": "b"})
        built = build_messages([Message(role="user", content=content)])
        assert "cache_control" not in built[0]["content"][0]
        assert built[0]["content"][1]["cache_control"] == {"type": "ephemeral"}
        assert "cache_control" not in content[1]


# ---------------------------------------------------------------------------
# create_message
# ---------------------------------------------------------------------------


class TestCreateMessage:
    @pytest.mark.asyncio
    async def test_streaming(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=_text_stream("Hel", "lo"))

        provider = await _make_provider(handler)
        events = await _collect(provider)
        await provider.close()

        assert events == [
            StreamUsage(321, 1),
            StreamText("Hel"),
            StreamText("lo"),
            StreamUsage(output_tokens=12),
        ]
        payload = json.loads(requests[0].content)
        assert payload["stream"] is True
        assert payload["temperature"] == 0
        assert payload["system"][0]["cache_control"] == {"type": "ephemeral"}
        assert "tools" not in payload
        assert requests[0].url.path == "/v1/messages"

    @pytest.mark.asyncio
    async def test_non_streaming(self):
        body = {
            "content": [{"type": "text", "text": "Part one"}, {"type": "text", "text": "Part two"}],
            "usage": {"input_tokens": 50, "output_tokens": 8},
        }
        provider = await _make_provider(lambda request: httpx.Response(200, json=body))

        events = await _collect(provider, stream=False)

        assert events == [StreamUsage(50, 8), StreamText("Part one\nPart two")]
        await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stream", [True, False])
    async def test_http_error_raises_provider_error(self, stream):
        body = {"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}}
        provider = await _make_provider(lambda request: httpx.Response(429, json=body))

        with pytest.raises(ProviderError) as exc_info:
            await _collect(provider, stream=stream)

        assert exc_info.value.error_type == "rate_limit_error"
        assert exc_info.value.status_code == 429
        await provider.close()

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        provider = await _make_provider(lambda request: httpx.Response(502, content=b"Bad Gateway"))
        with pytest.raises(ProviderError) as exc_info:
            await _collect(provider, stream=False)
        assert exc_info.value.error_type == "http_error"
        assert "Bad Gateway" in exc_info.value.message
        await provider.close()

    @pytest.mark.asyncio
    async def test_in_stream_error(self):
        content = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 1}}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        provider = await _make_provider(lambda request: httpx.Response(200, content=content))
        with pytest.raises(ProviderError) as exc_info:
            await _collect(provider)
        assert exc_info.value.error_type == "overloaded_error"
        await provider.close()

    @pytest.mark.asyncio
    async def test_requires_start(self, settings):
        provider = AnthropicProvider(settings)
        with pytest.raises(RuntimeError, match="start"):
            await _collect(provider)

    def test_satisfies_protocol(self, settings):
        assert isinstance(AnthropicProvider(settings), Provider)


# ---------------------------------------------------------------------------
# Auth headers
# ---------------------------------------------------------------------------


class TestAuthHeaders:
    async def _headers(self, **credentials) -> httpx.Headers:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers)
            return httpx.Response(200, json={"content": [], "usage": {}})

        settings = Settings(**credentials)
        provider = AnthropicProvider(settings, transport=httpx.MockTransport(handler))
        await provider.start()
        await _collect(provider, stream=False)
        await provider.close()
        return seen[0]

    @pytest.mark.asyncio
    async def test_api_key(self):
        headers = await self._headers(ANTHROPIC_API_KEY="sk-ant-api03-abc", ANTHROPIC_AUTH_TOKEN="")
        assert headers["x-api-key"] == "sk-ant-api03-abc"
        assert "authorization" not in headers
        assert headers["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_auth_token_takes_precedence(self):
        headers = await self._headers(ANTHROPIC_API_KEY="sk-ant-api03-abc", ANTHROPIC_AUTH_TOKEN="tok")
        assert headers["authorization"] == "Bearer tok"
        assert "x-api-key" not in headers

    @pytest.mark.asyncio
    async def test_oat_key_uses_bearer_and_beta(self):
        headers = await self._headers(ANTHROPIC_API_KEY="sk-ant-oat01-xyz", ANTHROPIC_AUTH_TOKEN="")
        assert headers["authorization"] == "Bearer sk-ant-oat01-xyz"
        assert headers["anthropic-beta"] == "oauth-2025-04-20"
