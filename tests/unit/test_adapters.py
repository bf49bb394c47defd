"""
Unit tests for the upstream provider adapters.
"""
import json

import httpx
import pytest
import respx

from chat_gateway.adapters import AnthropicAdapter, GoogleAdapter, OpenAIAdapter
from chat_gateway.core.errors import (
    GatewayAuthenticationError,
    GatewayConnectionError,
    GatewayRateLimitError,
    parse_retry_after,
)
from chat_gateway.models.request import ChatRequest, ProviderConfig
from chat_gateway.models.response import StreamFinished, TextDelta, ToolCallsDetected
from chat_gateway.models.tools import Tool


def sse(*events) -> str:
    return "".join(f"data: {e if isinstance(e, str) else json.dumps(e)}\n\n" for e in events)


def make_request() -> ChatRequest:
    return ChatRequest.model_validate({
        "model": "gpt-4o",
        "messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ],
    })


async def collect(adapter, request, tools=None):
    events = [event async for event in adapter.stream_chat(request, tools)]
    await adapter.aclose()
    return events


class TestOpenAIAdapter:
    """Test the OpenAI streaming adapter."""

    config = ProviderConfig(family="openai", base_url="https://openai.test/v1", api_key="sk", model="gpt-4o")

    @pytest.mark.asyncio
    @respx.mock
    async def test_streams_text(self):
        """Test content deltas become text events."""
        route = respx.post("https://openai.test/v1/chat/completions").mock(
            return_value=httpx.Response(200, text=sse(
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                "[DONE]",
            ))
        )
        events = await collect(OpenAIAdapter(self.config), make_request())

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hel", "lo"]
        assert isinstance(events[-1], StreamFinished)
        assert events[-1].finish_reason == "stop"
        body = json.loads(route.calls.last.request.content)
        assert body["stream"] is True
        assert body["max_tokens"] == 2000
        assert route.calls.last.request.headers["Authorization"] == "Bearer sk"

    @pytest.mark.asyncio
    @respx.mock
    async def test_assembles_tool_calls(self):
        """Test tool call fragments are merged by index."""
        respx.post("https://openai.test/v1/chat/completions").mock(
            return_value=httpx.Response(200, text=sse(
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "id": "c1", "function": {"name": "convert", "arguments": '{"amount"'}},
                ]}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "function": {"arguments": ': 1}'}},
                ]}, "finish_reason": "tool_calls"}]},
                "[DONE]",
            ))
        )
        tool = Tool(id="t", name="convert", endpoint="convert")
        events = await collect(OpenAIAdapter(self.config), make_request(), [tool])

        detected = [e for e in events if isinstance(e, ToolCallsDetected)]
        assert detected[0].calls == [{
            "id": "c1",
            "type": "function",
            "function": {"name": "convert", "arguments": '{"amount": 1}'},
        }]

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_statuses(self):
        """Test upstream error statuses map to gateway errors."""
        route = respx.post("https://openai.test/v1/chat/completions")

        route.mock(return_value=httpx.Response(401))
        with pytest.raises(GatewayAuthenticationError):
            await collect(OpenAIAdapter(self.config), make_request())

        route.mock(return_value=httpx.Response(429, headers={"Retry-After": "3"}))
        with pytest.raises(GatewayRateLimitError) as exc_info:
            await collect(OpenAIAdapter(self.config), make_request())
        assert exc_info.value.retry_after == 3.0

        route.mock(return_value=httpx.Response(500, text="overloaded"))
        with pytest.raises(GatewayConnectionError, match="overloaded"):
            await collect(OpenAIAdapter(self.config), make_request())

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_with_http_date(self):
        """Test a Retry-After date still maps to a rate limit error."""
        respx.post("https://openai.test/v1/chat/completions").mock(
            return_value=httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
        )
        with pytest.raises(GatewayRateLimitError) as exc_info:
            await collect(OpenAIAdapter(self.config), make_request())
        assert exc_info.value.retry_after == 0.0


class TestAnthropicAdapter:
    """Test the Anthropic streaming adapter."""

    config = ProviderConfig(
        family="anthropic",
        base_url="https://anthropic.test",
        api_key="ant",
        model="claude-3-haiku-20240307",
    )

    @pytest.mark.asyncio
    @respx.mock
    async def test_streams_text_and_tool_use(self):
        """Test text deltas and tool_use blocks."""
        route = respx.post("https://anthropic.test/v1/messages").mock(
            return_value=httpx.Response(200, text=sse(
                {"type": "message_start", "message": {"usage": {"input_tokens": 7}}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
                {"type": "content_block_start", "index": 1,
                 "content_block": {"type": "tool_use", "id": "tu1", "name": "convert"}},
                {"type": "content_block_delta", "index": 1,
                 "delta": {"type": "input_json_delta", "partial_json": '{"amount": 2}'}},
                {"type": "content_block_stop", "index": 1},
                {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 5}},
                {"type": "message_stop"},
            ))
        )
        events = await collect(AnthropicAdapter(self.config), make_request())

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hi"]
        calls = [e for e in events if isinstance(e, ToolCallsDetected)][0].calls
        assert calls == [{"id": "tu1", "type": "tool_use", "name": "convert", "input": {"amount": 2}}]
        assert events[-1].usage == {"prompt_tokens": 7, "completion_tokens": 5}

        body = json.loads(route.calls.last.request.content)
        assert body["system"] == "Be brief."
        assert body["messages"] == [{"role": "user", "content": "Hello"}]
        assert route.calls.last.request.headers["x-api-key"] == "ant"

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_event(self):
        """Test an in-stream error event raises."""
        respx.post("https://anthropic.test/v1/messages").mock(
            return_value=httpx.Response(200, text=sse(
                {"type": "error", "error": {"message": "Overloaded"}},
            ))
        )
        with pytest.raises(GatewayConnectionError, match="Overloaded"):
            await collect(AnthropicAdapter(self.config), make_request())

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_with_unparseable_retry_after(self):
        """Test a malformed retry-after header leaves the delay unknown."""
        respx.post("https://anthropic.test/v1/messages").mock(
            return_value=httpx.Response(429, headers={"retry-after": "soon"})
        )
        with pytest.raises(GatewayRateLimitError) as exc_info:
            await collect(AnthropicAdapter(self.config), make_request())
        assert exc_info.value.retry_after is None


class TestGoogleAdapter:
    """Test the Gemini adapter."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_streams_text_and_function_calls(self):
        """Test SSE chunks carry text and function calls."""
        config = ProviderConfig(
            family="google",
            base_url="https://google.test/v1beta",
            api_key="g",
            model="gemini-2.0-flash",
        )
        route = respx.post("https://google.test/v1beta/models/gemini-2.0-flash:streamGenerateContent").mock(
            return_value=httpx.Response(200, text=sse(
                {"candidates": [{"content": {"parts": [{"text": "Sure"}]}}]},
                {"candidates": [{"content": {"parts": [
                    {"functionCall": {"name": "convert", "args": {"amount": 3}}},
                ]}, "finishReason": "STOP"}],
                 "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2}},
            ))
        )
        events = await collect(GoogleAdapter(config), make_request())

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Sure"]
        calls = [e for e in events if isinstance(e, ToolCallsDetected)][0].calls
        assert calls == [{"name": "convert", "args": {"amount": 3}}]
        assert events[-1].usage == {"prompt_tokens": 4, "completion_tokens": 2}
        request = route.calls.last.request
        assert request.url.params["alt"] == "sse"
        assert request.headers["x-goog-api-key"] == "g"
        assert json.loads(request.content)["systemInstruction"] == {"parts": [{"text": "Be brief."}]}

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_streaming_model(self):
        """Test AQA is called once and surfaced as a single delta."""
        config = ProviderConfig(
            family="google",
            base_url="https://google.test/v1beta",
            api_key="g",
            model="models/aqa",
            streaming=False,
        )
        respx.post("https://google.test/v1beta/models/aqa:generateContent").mock(
            return_value=httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": "An "}, {"text": "answer"}]}}],
            })
        )
        events = await collect(GoogleAdapter(config), make_request())

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["An answer"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_forbidden_key(self):
        """Test a rejected key raises an authentication error."""
        config = ProviderConfig(
            family="google",
            base_url="https://google.test/v1beta",
            api_key="g",
            model="gemini-2.0-flash",
        )
        respx.post("https://google.test/v1beta/models/gemini-2.0-flash:streamGenerateContent").mock(
            return_value=httpx.Response(403)
        )
        with pytest.raises(GatewayAuthenticationError):
            await collect(GoogleAdapter(config), make_request())


class TestRetryAfter:
    """Test Retry-After header parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("3", 3.0),
        ("1.5", 1.5),
        ("-2", 0.0),
        ("Wed, 21 Oct 2015 07:28:00 GMT", 0.0),
        ("soon", None),
        ("", None),
        (None, None),
    ])
    def test_parse(self, value, expected):
        """Test delay-seconds and past dates parse, garbage does not."""
        assert parse_retry_after(value) == expected

    def test_future_date(self):
        """Test a future HTTP-date becomes a positive delay."""
        assert parse_retry_after("Fri, 31 Dec 9999 23:59:59 GMT") > 0
