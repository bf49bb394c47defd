"""
OpenAI chat completions adapter.

Streams chat completions from the OpenAI API (or any API speaking the same
protocol behind OPENAI_BASE_URL).
"""

import logging
import json
from typing import Optional, Set, List, Dict, Any, AsyncIterator
import httpx

from ..core.interface import AbstractProvider, ProviderCapability
from ..core.errors import (
    GatewayConnectionError,
    GatewayAuthenticationError,
    GatewayRateLimitError,
    parse_retry_after,
)
from ..models.request import ChatRequest, ProviderConfig, to_openai_format
from ..models.response import StreamEvent, TextDelta, ToolCallsDetected, StreamFinished
from ..models.tools import Tool

logger = logging.getLogger(__name__)


class OpenAIAdapter(AbstractProvider):
    """
    OpenAI API adapter.

    Tool call fragments arrive spread over many deltas, keyed by index; they
    are assembled and emitted as one ToolCallsDetected event when the stream
    ends.
    """

    def __init__(self, config: ProviderConfig, timeout: float = 60.0):
        super().__init__(config, timeout)
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {config.api_key}",
            },
            timeout=timeout,
        )

    @property
    def family(self) -> str:
        return "openai"

    @property
    def capabilities(self) -> Set[ProviderCapability]:
        return {
            ProviderCapability.CHAT_COMPLETION,
            ProviderCapability.STREAMING,
            ProviderCapability.TOOL_USE,
            ProviderCapability.VISION,
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream_chat(
        self,
        request: ChatRequest,
        tools: Optional[List[Tool]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Create a streaming chat completion via OpenAI API."""
        request_data = to_openai_format(request, self._config, tools)

        if not self._config.streaming:
            async for event in self._complete(request_data):
                yield event
            return

        pending_calls: Dict[int, Dict[str, Any]] = {}
        finish_reason = None
        usage = None

        try:
            async with self._client.stream(
                "POST",
                "/chat/completions",
                json=request_data,
            ) as response:
                await self._check_response_errors(response)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[6:]
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue

                    usage = chunk.get("usage") or usage
                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    finish_reason = choices[0].get("finish_reason") or finish_reason

                    content = delta.get("content")
                    if content:
                        yield TextDelta(text=content)

                    for fragment in delta.get("tool_calls") or []:
                        self._merge_tool_call(pending_calls, fragment)

        except httpx.RequestError as e:
            raise GatewayConnectionError(str(e), gateway=self.family)

        if pending_calls:
            yield ToolCallsDetected(calls=[pending_calls[i] for i in sorted(pending_calls)])

        yield StreamFinished(finish_reason=finish_reason or "stop", usage=usage)

    async def _complete(self, request_data: Dict[str, Any]) -> AsyncIterator[StreamEvent]:
        """Non-streaming completion surfaced as a single delta."""
        request_data["stream"] = False
        try:
            response = await self._client.post("/chat/completions", json=request_data)
        except httpx.RequestError as e:
            raise GatewayConnectionError(str(e), gateway=self.family)

        await self._check_response_errors(response)
        data = response.json()
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}

        if message.get("content"):
            yield TextDelta(text=message["content"])
        if message.get("tool_calls"):
            yield ToolCallsDetected(calls=message["tool_calls"])
        yield StreamFinished(finish_reason=choice.get("finish_reason"), usage=data.get("usage"))

    @staticmethod
    def _merge_tool_call(pending: Dict[int, Dict[str, Any]], fragment: Dict[str, Any]) -> None:
        """Fold one streamed tool call fragment into the call being assembled."""
        index = fragment.get("index", 0)
        call = pending.setdefault(index, {
            "id": None,
            "type": "function",
            "function": {"name": "", "arguments": ""},
        })
        if fragment.get("id"):
            call["id"] = fragment["id"]
        function = fragment.get("function") or {}
        if function.get("name"):
            call["function"]["name"] += function["name"]
        if function.get("arguments"):
            call["function"]["arguments"] += function["arguments"]

    async def _check_response_errors(self, response: httpx.Response) -> None:
        """Check response for errors and raise appropriate exceptions."""
        if response.status_code == 200:
            return

        if response.status_code == 401:
            raise GatewayAuthenticationError(
                "Invalid API key",
                gateway=self.family
            )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise GatewayRateLimitError(
                "Rate limit exceeded",
                gateway=self.family,
                retry_after=parse_retry_after(retry_after)
            )

        body = (await response.aread()).decode("utf-8", errors="replace")
        raise GatewayConnectionError(
            f"Request failed: {response.status_code} - {body[:500]}",
            gateway=self.family
        )
