"""
Google Generative Language API adapter.

Provides access to Gemini and Gemma models through the public
generativelanguage.googleapis.com endpoint.
"""

import json
import logging
import httpx
from typing import AsyncIterator, Dict, List, Optional, Set, Any

from ..core.interface import AbstractProvider, ProviderCapability
from ..core.errors import GatewayConnectionError, GatewayAuthenticationError, GatewayRateLimitError
from ..models.request import ChatRequest, ProviderConfig, to_gemini_format
from ..models.response import StreamEvent, TextDelta, ToolCallsDetected, StreamFinished
from ..models.tools import Tool

logger = logging.getLogger(__name__)


class GoogleAdapter(AbstractProvider):
    """
    Gemini adapter.

    Supports:
    - Gemini 1.5 / 2.0 / 2.5 models
    - Gemma models
    - AQA (non-streaming)

    Function calls arrive as whole {"name", "args"} parts.
    """

    def __init__(self, config: ProviderConfig, timeout: float = 60.0):
        super().__init__(config, timeout)
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": config.api_key.strip(),
            },
            timeout=timeout,
        )

    @property
    def family(self) -> str:
        return "google"

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

    def _model_path(self) -> str:
        model = self._config.model
        if model.startswith("models/"):
            return f"/{model}"
        return f"/models/{model}"

    async def stream_chat(
        self,
        request: ChatRequest,
        tools: Optional[List[Tool]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Execute streaming chat completion request."""
        payload = to_gemini_format(request, self._config, tools)

        if not self._config.streaming:
            async for event in self._generate(payload):
                yield event
            return

        url = f"{self._model_path()}:streamGenerateContent"
        function_calls: List[Dict[str, Any]] = []
        finish_reason = None
        usage = None

        try:
            async with self._client.stream("POST", url, params={"alt": "sse"}, json=payload) as response:
                await self._check_response_errors(response)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        chunk = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue

                    usage = chunk.get("usageMetadata") or usage
                    for text, call, reason in self._parse_candidates(chunk):
                        if text:
                            yield TextDelta(text=text)
                        if call:
                            function_calls.append(call)
                        finish_reason = reason or finish_reason

        except httpx.RequestError as e:
            raise GatewayConnectionError(str(e), gateway=self.family)

        if function_calls:
            yield ToolCallsDetected(calls=function_calls)

        yield StreamFinished(finish_reason=finish_reason or "STOP", usage=self._usage(usage))

    async def _generate(self, payload: Dict[str, Any]) -> AsyncIterator[StreamEvent]:
        """Non-streaming generateContent call surfaced as a single delta."""
        try:
            response = await self._client.post(f"{self._model_path()}:generateContent", json=payload)
        except httpx.RequestError as e:
            raise GatewayConnectionError(str(e), gateway=self.family)

        await self._check_response_errors(response)
        data = response.json()

        texts = []
        calls = []
        finish_reason = None
        for text, call, reason in self._parse_candidates(data):
            if text:
                texts.append(text)
            if call:
                calls.append(call)
            finish_reason = reason or finish_reason

        if texts:
            yield TextDelta(text="".join(texts))
        if calls:
            yield ToolCallsDetected(calls=calls)
        yield StreamFinished(finish_reason=finish_reason, usage=self._usage(data.get("usageMetadata")))

    @staticmethod
    def _parse_candidates(chunk: Dict[str, Any]):
        """Yield (text, function_call, finish_reason) for each part of the first candidate."""
        candidates = chunk.get("candidates") or []
        if not candidates:
            return
        candidate = candidates[0]
        reason = candidate.get("finishReason")
        parts = (candidate.get("content") or {}).get("parts") or []
        if not parts:
            yield None, None, reason
            return
        for part in parts:
            call = part.get("functionCall")
            if call is not None:
                call = {"name": call.get("name", ""), "args": call.get("args") or {}}
            yield part.get("text"), call, reason

    @staticmethod
    def _usage(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not metadata:
            return None
        return {
            "prompt_tokens": metadata.get("promptTokenCount", 0),
            "completion_tokens": metadata.get("candidatesTokenCount", 0),
        }

    async def _check_response_errors(self, response: httpx.Response) -> None:
        """Check response for errors and raise appropriate exceptions."""
        if response.status_code == 200:
            return

        if response.status_code in (401, 403):
            raise GatewayAuthenticationError(
                "Invalid Google API key",
                gateway=self.family
            )

        if response.status_code == 429:
            raise GatewayRateLimitError("Rate limit exceeded", gateway=self.family)

        body = (await response.aread()).decode("utf-8", errors="replace")
        raise GatewayConnectionError(
            f"Request failed: {response.status_code} - {body[:500]}",
            gateway=self.family
        )
