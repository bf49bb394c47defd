"""
Anthropic messages API adapter.
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
from ..models.request import ChatRequest, ProviderConfig, to_anthropic_format
from ..models.response import StreamEvent, TextDelta, ToolCallsDetected, StreamFinished
from ..models.tools import Tool

logger = logging.getLogger(__name__)


class AnthropicAdapter(AbstractProvider):
    """
    Anthropic Claude adapter.

    Tool use blocks are emitted in Anthropic's own {"id", "name", "input"}
    shape; their JSON input arrives as partial_json fragments.
    """

    ANTHROPIC_VERSION = "2023-06-01"

    def __init__(self, config: ProviderConfig, timeout: float = 60.0):
        super().__init__(config, timeout)
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Content-Type": "application/json",
                "x-api-key": config.api_key,
                "anthropic-version": self.ANTHROPIC_VERSION,
            },
            timeout=timeout,
        )

    @property
    def family(self) -> str:
        return "anthropic"

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
        """Create a streaming chat completion via Anthropic API."""
        request_data = to_anthropic_format(request, self._config, tools)
        request_data["stream"] = True

        blocks: Dict[int, Dict[str, Any]] = {}
        tool_calls: List[Dict[str, Any]] = []
        usage: Dict[str, Any] = {}
        stop_reason = None

        try:
            async with self._client.stream(
                "POST",
                "/v1/messages",
                json=request_data,
            ) as response:
                await self._check_response_errors(response)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue

                    event_type = event.get("type")

                    if event_type == "message_start":
                        usage.update((event.get("message") or {}).get("usage") or {})

                    elif event_type == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            blocks[event.get("index", 0)] = {
                                "id": block.get("id"),
                                "type": "tool_use",
                                "name": block.get("name", ""),
                                "partial_json": "",
                            }

                    elif event_type == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield TextDelta(text=delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            block = blocks.get(event.get("index", 0))
                            if block is not None:
                                block["partial_json"] += delta.get("partial_json", "")

                    elif event_type == "content_block_stop":
                        block = blocks.pop(event.get("index", 0), None)
                        if block is not None:
                            tool_calls.append(self._finish_tool_block(block))

                    elif event_type == "message_delta":
                        stop_reason = (event.get("delta") or {}).get("stop_reason") or stop_reason
                        usage.update(event.get("usage") or {})

                    elif event_type == "error":
                        message = (event.get("error") or {}).get("message", "Upstream error")
                        raise GatewayConnectionError(message, gateway=self.family)

                    elif event_type == "message_stop":
                        break

        except httpx.RequestError as e:
            raise GatewayConnectionError(str(e), gateway=self.family)

        if tool_calls:
            yield ToolCallsDetected(calls=tool_calls)

        yield StreamFinished(
            finish_reason=stop_reason or "end_turn",
            usage={
                "prompt_tokens": usage.get("input_tokens", 0),
                "completion_tokens": usage.get("output_tokens", 0),
            },
        )

    @staticmethod
    def _finish_tool_block(block: Dict[str, Any]) -> Dict[str, Any]:
        """Turn an accumulated tool_use block into a tool call payload."""
        raw_input = block.pop("partial_json")
        try:
            block["input"] = json.loads(raw_input) if raw_input else {}
        except json.JSONDecodeError:
            logger.warning(f"Discarding malformed tool input for {block.get('name')}")
            block["input"] = {}
        return block

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
            retry_after = response.headers.get("retry-after")
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
