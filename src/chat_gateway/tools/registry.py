"""
Tool registry and tool-call log access.

The registry (tools, personas) and the call log live in an external
REST database; in-memory versions serve tests and local development.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx

from ..core.errors import ToolExecutionError
from ..models.tools import Tool, ToolCallLogEntry

logger = logging.getLogger(__name__)


class ToolRegistry(ABC):
    """Read-only view of tool definitions and persona tool sets."""

    @abstractmethod
    async def get_tool_by_name(self, name: str) -> Optional[Tool]:
        pass

    @abstractmethod
    async def get_persona_tool_ids(self, persona_id: str) -> List[str]:
        pass

    @abstractmethod
    async def get_tools(self, tool_ids: List[str]) -> List[Tool]:
        pass

    async def get_persona_tools(self, persona_id: str) -> List[Tool]:
        """Tools attached to a persona; empty when the persona has none."""
        tool_ids = await self.get_persona_tool_ids(persona_id)
        if not tool_ids:
            return []
        return await self.get_tools(tool_ids)


class ToolCallLog(ABC):
    """Executed tool calls, unique per (user_id, call_id)."""

    @abstractmethod
    async def find(self, user_id: str, call_id: str) -> Optional[ToolCallLogEntry]:
        pass

    @abstractmethod
    async def record(self, entry: ToolCallLogEntry) -> None:
        pass


class _RestClient:
    """Shared HTTP plumbing for the REST-backed registry and log."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        token: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {token}",
            "apikey": api_key,
            "Content-Type": "application/json",
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _select(self, table: str, query: str) -> List[Dict]:
        try:
            response = await self._client.get(
                f"{self.base_url}/rest/v1/{table}?{query}",
                headers=self._headers,
            )
        except httpx.RequestError as e:
            raise ToolExecutionError(f"Tool registry unreachable: {e}")

        if response.status_code != 200:
            raise ToolExecutionError(f"Failed to fetch {table}: {response.status_code}")

        return response.json() or []


class HttpToolRegistry(_RestClient, ToolRegistry):
    """Tool registry over the REST database API."""

    async def get_tool_by_name(self, name: str) -> Optional[Tool]:
        rows = await self._select("tools", f"name=eq.{quote(name)}&select=*")
        if not rows:
            return None
        return Tool.model_validate(rows[0])

    async def get_persona_tool_ids(self, persona_id: str) -> List[str]:
        rows = await self._select("personas", f"id=eq.{quote(persona_id)}&select=tool_ids")
        if not rows:
            return []
        return [str(tool_id) for tool_id in rows[0].get("tool_ids") or []]

    async def get_tools(self, tool_ids: List[str]) -> List[Tool]:
        if not tool_ids:
            return []
        ids = ",".join(quote(tool_id) for tool_id in tool_ids)
        rows = await self._select("tools", f"id=in.({ids})&select=*")
        return [Tool.model_validate(row) for row in rows]


class HttpToolCallLog(_RestClient, ToolCallLog):
    """Tool-call log over the REST database API."""

    async def find(self, user_id: str, call_id: str) -> Optional[ToolCallLogEntry]:
        rows = await self._select(
            "tool_call_log",
            f"user_id=eq.{quote(user_id)}&call_id=eq.{quote(call_id)}&select=*",
        )
        if not rows:
            return None
        return ToolCallLogEntry.model_validate(rows[0])

    async def record(self, entry: ToolCallLogEntry) -> None:
        try:
            response = await self._client.post(
                f"{self.base_url}/rest/v1/tool_call_log",
                headers=self._headers,
                json=entry.model_dump(),
            )
        except httpx.RequestError as e:
            logger.error(f"Failed to log tool call {entry.call_id}: {e}")
            return

        if response.status_code not in (200, 201, 204):
            logger.error(f"Failed to log tool call {entry.call_id}: {response.status_code}")


class InMemoryToolRegistry(ToolRegistry):
    """Registry held in memory."""

    def __init__(
        self,
        tools: Optional[Iterable[Tool]] = None,
        personas: Optional[Dict[str, List[str]]] = None,
    ):
        self._tools: Dict[str, Tool] = {t.id: t for t in tools or []}
        self._personas: Dict[str, List[str]] = dict(personas or {})

    def add_tool(self, tool: Tool) -> None:
        self._tools[tool.id] = tool

    def add_persona(self, persona_id: str, tool_ids: List[str]) -> None:
        self._personas[persona_id] = list(tool_ids)

    async def get_tool_by_name(self, name: str) -> Optional[Tool]:
        for tool in self._tools.values():
            if tool.name == name:
                return tool
        return None

    async def get_persona_tool_ids(self, persona_id: str) -> List[str]:
        return list(self._personas.get(persona_id, []))

    async def get_tools(self, tool_ids: List[str]) -> List[Tool]:
        return [self._tools[tool_id] for tool_id in tool_ids if tool_id in self._tools]


class InMemoryToolCallLog(ToolCallLog):
    """Call log held in memory."""

    def __init__(self):
        self._entries: Dict[Tuple[str, str], ToolCallLogEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def find(self, user_id: str, call_id: str) -> Optional[ToolCallLogEntry]:
        return self._entries.get((user_id, call_id))

    async def record(self, entry: ToolCallLogEntry) -> None:
        # First write wins, matching the unique constraint of the database log
        self._entries.setdefault((entry.user_id, entry.call_id), entry)
