"""
Tool execution.

A tool's endpoint is one of:

- a path (``/tools/weather``): the tools service, selected by the last
  path segment
- an absolute URL: an external service receiving the arguments as body
- a bare name (``convert``): a local function, else the tools service

All three look the same to the caller: JSON arguments in, JSON result out.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from opentelemetry import trace

from ..core.errors import ToolExecutionError
from ..models.tools import Tool
from .builtin import LocalTool, make_convert_tool

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ToolExecutor:
    """Dispatches tool calls to their endpoints."""

    def __init__(
        self,
        tools_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        local_tools: Optional[Dict[str, LocalTool]] = None,
    ):
        """
        Initialize the executor.

        Args:
            tools_url: Tools service endpoint
            api_key: Key presented to the tools service
            timeout: Request timeout in seconds
            client: Shared HTTP client; one is created when omitted
            local_tools: In-process tools by name; defaults to the built-ins
        """
        self.tools_url = tools_url
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        if local_tools is None:
            local_tools = {"convert": make_convert_tool(self._client)}
        self._local_tools = local_tools

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def execute(self, tool: Tool, args: Dict[str, Any]) -> Any:
        """
        Execute a tool.

        Raises:
            ToolExecutionError: Endpoint invalid, unreachable or failing
        """
        endpoint = tool.endpoint.strip()

        with tracer.start_as_current_span("tool_call") as span:
            span.set_attribute("tool", tool.name)
            span.set_attribute("endpoint", endpoint)

            if endpoint.startswith("/"):
                name = endpoint.rstrip("/").rsplit("/", 1)[-1]
                return await self._call_tools_service(name, args)

            if endpoint.startswith(("http://", "https://")):
                return await self._post(endpoint, args, headers={})

            if endpoint and "/" not in endpoint and "." not in endpoint:
                local = self._local_tools.get(endpoint)
                if local is not None:
                    return await local(args)
                return await self._call_tools_service(endpoint, args)

        logger.error(f"Invalid tool endpoint format: {endpoint}")
        raise ToolExecutionError("Invalid tool endpoint")

    async def _call_tools_service(self, name: str, args: Dict[str, Any]) -> Any:
        body = {"tool_name": name, **args}
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        return await self._post(self.tools_url, body, headers=headers)

    async def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> Any:
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.RequestError as e:
            raise ToolExecutionError(f"Tool execution failed: {e}")

        if response.status_code != 200:
            logger.error(f"Tool endpoint {url} returned {response.status_code}")
            raise ToolExecutionError(f"Tool execution failed: {response.text[:500]}")

        try:
            return response.json()
        except ValueError:
            raise ToolExecutionError("Tool returned a non-JSON response")
