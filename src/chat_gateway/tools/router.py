"""
Tool router.

Executes the tool calls a model requests at the end of a stream. Calls are
handled one at a time in the order given; each one ends in its own result,
so a failing call never affects its siblings.
"""

import json
import logging
from typing import Any, Dict, List

from ..auth import Principal
from ..billing.ledger import LedgerClient
from ..core.errors import (
    InsufficientCreditsError,
    LedgerError,
    ToolExecutionError,
)
from ..models.billing import SpendRequest
from ..models.tools import (
    CanonicalToolCall,
    Tool,
    ToolBatchResult,
    ToolCallLogEntry,
    ToolResult,
    describe_tool_call,
    normalize_tool_call,
)
from .executor import ToolExecutor
from .registry import ToolCallLog, ToolRegistry

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "Insufficient credits for tool execution"
BILLING_UNAVAILABLE = "Billing unavailable for tool execution"
PREMIUM_TOOL = "This tool requires a premium subscription"

_JSON_TYPES = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
    "null": (type(None),),
}


def _json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _matches(value: Any, expected: str) -> bool:
    if expected not in _JSON_TYPES:
        return True
    # bool is an int subclass in Python but never a JSON number
    if isinstance(value, bool):
        return expected == "boolean"
    if expected == "integer" and isinstance(value, float):
        return value.is_integer()
    return isinstance(value, _JSON_TYPES[expected])


def validate_arguments(args: Dict[str, Any], schema: Dict[str, Any]) -> None:
    """
    Check arguments against a tool's JSON schema.

    Only required fields and top-level declared types are checked. A
    whole-number float satisfies ``integer``.

    Raises:
        ToolExecutionError: Missing field or type mismatch
    """
    for name in schema.get("required") or []:
        if name not in args:
            raise ToolExecutionError(f"Missing required field: {name}")

    properties = schema.get("properties") or {}
    for name, value in args.items():
        declared = (properties.get(name) or {}).get("type")
        if not declared:
            continue
        allowed = declared if isinstance(declared, list) else [declared]
        if not any(_matches(value, t) for t in allowed):
            raise ToolExecutionError(
                f"Invalid type for {name}: expected {'|'.join(allowed)}, got {_json_type_name(value)}"
            )


def summarize_tool_results(results: List[ToolResult]) -> str:
    """Human-readable summary of tool results, appended to the visible reply."""
    sections = []
    for result in results:
        try:
            payload = json.loads(result.content)
        except ValueError:
            payload = result.content

        if result.is_error:
            sections.append(f"{result.name} failed: {payload.get('error')}")
        elif isinstance(payload, dict) and payload.get("message"):
            sections.append(f"{result.name}: {payload['message']}")
        else:
            sections.append(f"{result.name}:\n{json.dumps(payload, indent=2)}")

    if not sections:
        return ""
    return "\n\n" + "\n\n".join(sections)


class ToolRouter:
    """
    Routes tool calls for one principal.

    Tool costs are debited before execution under the key
    ``tool-{user_id}-{call_id}``, so a retried call is never charged twice.
    Debits are not refunded when execution then fails.
    """

    def __init__(
        self,
        principal: Principal,
        registry: ToolRegistry,
        call_log: ToolCallLog,
        executor: ToolExecutor,
        ledger: LedgerClient,
        entitled: bool = False,
    ):
        """
        Initialize the router.

        Args:
            principal: Caller the tools run for
            registry: Tool definitions
            call_log: Idempotency log of executed calls
            executor: Endpoint dispatcher
            ledger: Ledger charged for tool costs
            entitled: Caller has premium access and is exempt from tool costs
        """
        self.principal = principal
        self.registry = registry
        self.call_log = call_log
        self.executor = executor
        self.ledger = ledger
        self.entitled = entitled or principal.is_service

    async def process_tool_calls(self, raw_calls: List[Dict[str, Any]]) -> ToolBatchResult:
        """
        Execute a batch of provider tool calls.

        Args:
            raw_calls: Tool calls in any supported provider shape

        Returns:
            One result per call, in input order, and the credits spent
        """
        results: List[ToolResult] = []
        total = 0

        for raw in raw_calls:
            call_id, name = describe_tool_call(raw)
            try:
                call = normalize_tool_call(raw)
                call_id, name = call.id, call.name
                result = await self._execute(call)
            except ToolExecutionError as e:
                logger.warning(f"Tool call {call_id} ({name}) failed: {e.message}")
                result = ToolResult.failure(call_id, name, e.message)
            except Exception as e:
                logger.exception(f"Unexpected error in tool call {call_id} ({name})")
                result = ToolResult.failure(call_id, name, str(e))

            results.append(result)
            total += result.tokens_spent

        return ToolBatchResult(results=results, total_tokens_spent=total)

    async def _execute(self, call: CanonicalToolCall) -> ToolResult:
        tool = await self.registry.get_tool_by_name(call.name)
        if tool is None:
            raise ToolExecutionError(f"Tool not found: {call.name}")

        if tool.requires_premium and not self.entitled:
            raise ToolExecutionError(PREMIUM_TOOL)

        validate_arguments(call.args, tool.json_schema)

        user_id = self.principal.user_id
        previous = await self.call_log.find(user_id, call.id)
        if previous is not None:
            logger.info(f"Tool call {call.id} already executed, returning logged result")
            return ToolResult.success(call.id, call.name, previous.result)

        spent = await self._charge(tool, call)
        output = await self.executor.execute(tool, call.args)

        await self.call_log.record(ToolCallLogEntry(
            user_id=user_id,
            tool_id=tool.id,
            call_id=call.id,
            arguments=call.args,
            result=output,
            tokens_spent=spent,
        ))

        return ToolResult.success(call.id, call.name, output, tokens_spent=spent)

    async def _charge(self, tool: Tool, call: CanonicalToolCall) -> int:
        if self.entitled or tool.cost_tokens <= 0:
            return 0

        request = SpendRequest(
            amount=tool.cost_tokens,
            idempotency_key=f"tool-{self.principal.user_id}-{call.id}",
            description=f"Tool: {tool.name}",
            metadata={"tool_id": tool.id, "call_id": call.id},
        )
        try:
            await self.ledger.spend(request)
        except InsufficientCreditsError:
            raise ToolExecutionError(INSUFFICIENT_CREDITS)
        except LedgerError as e:
            logger.error(f"Tool debit failed for {call.id}: {e}")
            raise ToolExecutionError(BILLING_UNAVAILABLE)

        return tool.cost_tokens
